"""
Unit Tests for Record Hashing, Value Codec and Sensitivity
==========================================================
"""

import pytest
from datetime import datetime, timezone, timedelta


class TestRecordHash:
    """Tests for the per-record integrity digest."""

    def _hash(self, **overrides):
        from audit_ledger.audit.hashing import compute_record_hash

        fields = dict(
            entity_type="contact",
            entity_id=7,
            operation="UPDATE",
            field_name="name",
            old_value="A",
            new_value="B",
            actor_user_id=2,
            timestamp=datetime(2026, 3, 1, 12, 30, 45, 123456, tzinfo=timezone.utc),
        )
        fields.update(overrides)
        return compute_record_hash(**fields)

    def test_hash_is_sha256_hex(self):
        """Should produce a 64-character hex digest."""
        digest = self._hash()

        assert len(digest) == 64
        int(digest, 16)

    def test_hash_is_deterministic(self):
        """Same fields and instant should give the same digest."""
        assert self._hash() == self._hash()

    @pytest.mark.parametrize("field,value", [
        ("entity_type", "lead"),
        ("entity_id", 8),
        ("operation", "DELETE"),
        ("field_name", "phone"),
        ("old_value", "Z"),
        ("new_value", {"first": "B"}),
        ("actor_user_id", 3),
    ])
    def test_hash_changes_with_each_field(self, field, value):
        """Changing any hashed field should change the digest."""
        assert self._hash(**{field: value}) != self._hash()

    def test_hash_changes_with_timestamp(self):
        """A different instant should change the digest."""
        later = datetime(2026, 3, 1, 12, 30, 45, 123457, tzinfo=timezone.utc)

        assert self._hash(timestamp=later) != self._hash()

    def test_naive_timestamp_treated_as_utc(self):
        """A naive stored timestamp should hash like the same UTC instant."""
        aware = datetime(2026, 3, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)

        assert self._hash(timestamp=aware.replace(tzinfo=None)) == self._hash(timestamp=aware)

    def test_offset_timestamp_normalized(self):
        """The same instant in another offset should give the same digest."""
        aware = datetime(2026, 3, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
        shifted = aware.astimezone(timezone(timedelta(hours=2)))

        assert self._hash(timestamp=shifted) == self._hash(timestamp=aware)

    def test_verify_detects_mismatch(self):
        """verify_record_hash should return False on a wrong digest."""
        from audit_ledger.audit.hashing import verify_record_hash

        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
        digest = self._hash(timestamp=ts)

        assert verify_record_hash(digest, "contact", 7, "UPDATE", "name", "A", "B", 2, ts) is True
        assert verify_record_hash(digest, "contact", 7, "UPDATE", "name", "A", "C", 2, ts) is False

    def test_verify_never_raises(self):
        """Unknown enum values or missing data should yield False."""
        from audit_ledger.audit.hashing import verify_record_hash

        ts = datetime(2026, 3, 1, tzinfo=timezone.utc)

        assert verify_record_hash("x" * 64, "bogus", 7, "UPDATE", None, None, None, 2, ts) is False
        assert verify_record_hash(None, "contact", 7, "UPDATE", None, None, None, 2, ts) is False
        assert verify_record_hash("x" * 64, "contact", 7, "UPDATE", None, None, None, 2, None) is False


class TestValueCodec:
    """Tests for the old/new value serialization boundary."""

    def test_none_stored_as_null(self):
        """None should be stored as SQL NULL."""
        from audit_ledger.audit.codec import encode_value, decode_value

        assert encode_value(None) is None
        assert decode_value(None) is None

    def test_structured_values_survive(self):
        """Objects, lists and scalars should come back unchanged."""
        from audit_ledger.audit.codec import encode_value, decode_value

        for value in ({"a": [1, 2, {"b": None}]}, [1, "x"], "text", 42, 1.5, True):
            assert decode_value(encode_value(value)) == value

    def test_string_that_looks_like_json_stays_string(self):
        """A string value should not be confused with a structured one."""
        from audit_ledger.audit.codec import encode_value, decode_value

        assert decode_value(encode_value("42")) == "42"

    def test_non_json_types_stored_as_text(self):
        """Datetimes should be stored in string form."""
        from audit_ledger.audit.codec import normalize_value

        ts = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

        assert normalize_value({"at": ts}) == {"at": str(ts)}

    def test_legacy_text_lenient_and_strict(self):
        """Bare text should pass the lenient decoder and fail the strict one."""
        from audit_ledger.audit.codec import decode_value, decode_value_strict

        assert decode_value("not json{") == "not json{"
        with pytest.raises(ValueError):
            decode_value_strict("not json{")


class TestSensitivity:
    """Tests for sensitivity derivation."""

    def test_user_update_is_sensitive(self):
        """High-security entity type should be sensitive."""
        from audit_ledger.audit.event_types import derive_sensitivity

        assert derive_sensitivity("user", "UPDATE") is True

    def test_contact_update_is_not_sensitive(self):
        """Ordinary entity update should not be sensitive."""
        from audit_ledger.audit.event_types import derive_sensitivity

        assert derive_sensitivity("contact", "UPDATE") is False

    def test_login_operation_forces_sensitive(self):
        """LOGIN alone should force sensitivity."""
        from audit_ledger.audit.event_types import derive_sensitivity

        assert derive_sensitivity("contact", "LOGIN") is True

    def test_access_is_not_sensitive(self):
        """ACCESS on a session should stay visible."""
        from audit_ledger.audit.event_types import derive_sensitivity

        assert derive_sensitivity("session", "ACCESS") is False

    def test_custom_high_security_set(self):
        """A substituted set should drive the rule."""
        from audit_ledger.audit.event_types import EntityType, derive_sensitivity

        custom = frozenset({EntityType.SALE})

        assert derive_sensitivity("sale", "UPDATE", custom) is True
        assert derive_sensitivity("user", "UPDATE", custom) is False

    def test_unknown_values_rejected(self):
        """Unknown entity types should raise ValueError."""
        from audit_ledger.audit.event_types import derive_sensitivity

        with pytest.raises(ValueError):
            derive_sensitivity("invoice", "UPDATE")

    def test_operation_for_method(self):
        """HTTP methods should map to ledger operations; GET to nothing."""
        from audit_ledger.audit.event_types import Operation, operation_for_method

        assert operation_for_method("post") is Operation.CREATE
        assert operation_for_method("PUT") is Operation.UPDATE
        assert operation_for_method("PATCH") is Operation.UPDATE
        assert operation_for_method("DELETE") is Operation.DELETE
        assert operation_for_method("GET") is None


class TestSettings:
    """Tests for environment configuration."""

    def test_defaults(self, monkeypatch):
        """Unset variables should give documented defaults."""
        from audit_ledger.config import AuditSettings
        from audit_ledger.audit.event_types import DEFAULT_HIGH_SECURITY_ENTITIES

        for name in ("AUDIT_ADMIN_ROLE", "AUDIT_HIGH_SECURITY_ENTITIES", "AUDIT_SESSION_IDLE_MINUTES"):
            monkeypatch.delenv(name, raising=False)

        settings = AuditSettings.from_env()

        assert settings.admin_role == "Administrator"
        assert settings.high_security_entities == DEFAULT_HIGH_SECURITY_ENTITIES
        assert settings.session_idle_minutes == 60
        assert "/api/audit-logs" in settings.skip_prefixes

    def test_overrides(self, monkeypatch):
        """Variables should override defaults."""
        from audit_ledger.config import AuditSettings
        from audit_ledger.audit.event_types import EntityType

        monkeypatch.setenv("AUDIT_HIGH_SECURITY_ENTITIES", "user, sale")
        monkeypatch.setenv("AUDIT_SESSION_IDLE_MINUTES", "15")
        monkeypatch.setenv("AUDIT_DB_ECHO", "true")

        settings = AuditSettings.from_env()

        assert settings.high_security_entities == frozenset({EntityType.USER, EntityType.SALE})
        assert settings.session_idle_minutes == 15
        assert settings.db_echo is True

    def test_unknown_entity_rejected(self, monkeypatch):
        """An unknown high-security entity name should fail fast."""
        from audit_ledger.config import AuditSettings

        monkeypatch.setenv("AUDIT_HIGH_SECURITY_ENTITIES", "user,invoice")

        with pytest.raises(ValueError):
            AuditSettings.from_env()


class TestLogging:
    """Tests for configure_logging."""

    def test_json_lines_with_service(self, capsys):
        """Log lines should be JSON and carry the service name."""
        import json
        import logging
        import structlog
        from audit_ledger.logging_setup import configure_logging

        root_handlers = list(logging.getLogger().handlers)
        try:
            configure_logging("ledger-test", level="INFO", json_output=True)
            structlog.get_logger("ledger.test").info("sample_event", answer=42)

            lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
            sample = [line for line in lines if line.get("event") == "sample_event"]

            assert sample[0]["answer"] == 42
            assert sample[0]["service"] == "ledger-test"
            assert sample[0]["level"] == "info"
        finally:
            structlog.contextvars.clear_contextvars()
            structlog.reset_defaults()
            logging.getLogger().handlers[:] = root_handlers
