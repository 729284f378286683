"""
Change Capture Middleware
=========================
Pure ASGI middleware that turns successful mutating requests into ledger
records.

- POST -> one CREATE record carrying the submitted body
- PUT / PATCH -> one UPDATE record per changed field
- DELETE -> one DELETE record
- GET and skipped prefixes are never recorded

The pre-change snapshot for PUT / PATCH is read before the request reaches
the handler. Diffing and ledger writes run in one detached task after the
response has been sent, so they never delay or fail the response.

Usage:
    app.add_middleware(
        ChangeCaptureMiddleware,
        service=audit_service,
        routes={"/api/contacts": EntityType.CONTACT},
        registry=snapshot_registry,
    )
"""

import json
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from starlette.requests import Request
import structlog

from ..audit.event_types import EntityType, Operation, operation_for_method
from ..audit.models import AuditContext
from ..audit.service import AuditService
from ..config import DEFAULT_SKIP_PREFIXES, AuditSettings
from .diff import compute_field_changes
from .providers import SnapshotRegistry

logger = structlog.get_logger(__name__)

DEFAULT_SESSION_COOKIE = "authToken"


def request_context(
    scope,
    cookie_name: str = DEFAULT_SESSION_COOKIE,
    ua_length: int = 100,
) -> AuditContext:
    """Client address, user agent and session token of a request."""
    request = Request(scope)
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent") or "Unknown"

    endpoint = request.url.path
    if request.url.query:
        endpoint = f"{endpoint}?{request.url.query}"

    return AuditContext(
        ip_address=ip_address,
        user_agent=user_agent,
        session_id=request.cookies.get(cookie_name),
        metadata={
            "endpoint": endpoint,
            "method": request.method,
            "user_agent": user_agent[:ua_length],
        },
    )


def get_scope_principal(scope):
    """Principal placed on ``request.state.principal`` by the host's auth layer."""
    return scope.get("state", {}).get("principal")


def _parse_json(raw: bytes) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _coerce_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None


def _under_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def _id_from_path(path: str, prefix: str) -> Optional[int]:
    remainder = path[len(prefix):].strip("/")
    if not remainder:
        return None
    return _coerce_id(remainder.split("/")[0])


class ChangeCaptureMiddleware:
    """
    Records entity mutations for the configured route prefixes.

    Args:
        app: The wrapped ASGI application
        service: Audit service receiving the records
        routes: Route prefix -> entity type, e.g. {"/api/contacts": "contact"}
        registry: Snapshot providers for field-level UPDATE diffs
        skip_prefixes: Path prefixes never recorded; defaults to settings.skip_prefixes
        cookie_name: Cookie carrying the session token
        settings: AuditSettings supplying the skip prefixes
    """

    def __init__(
        self,
        app,
        service: AuditService,
        routes: Mapping[str, Union[EntityType, str]],
        registry: Optional[SnapshotRegistry] = None,
        skip_prefixes: Optional[Sequence[str]] = None,
        cookie_name: str = DEFAULT_SESSION_COOKIE,
        settings: Optional[AuditSettings] = None,
    ):
        self.app = app
        self.service = service
        # Longest prefix wins
        self.routes = sorted(
            ((prefix.rstrip("/"), EntityType(entity)) for prefix, entity in routes.items()),
            key=lambda item: len(item[0]),
            reverse=True,
        )
        self.registry = registry or SnapshotRegistry()
        if skip_prefixes is None:
            skip_prefixes = settings.skip_prefixes if settings is not None else DEFAULT_SKIP_PREFIXES.split(",")
        self.skip_prefixes = tuple(skip_prefixes)
        self.cookie_name = cookie_name

    def match_route(self, path: str) -> Optional[Tuple[str, EntityType]]:
        for prefix, entity_type in self.routes:
            if _under_prefix(path, prefix):
                return prefix, entity_type
        return None

    def should_skip(self, path: str) -> bool:
        return any(_under_prefix(path, prefix) for prefix in self.skip_prefixes)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        operation = operation_for_method(scope.get("method", "GET"))
        route = self.match_route(path)
        if operation is None or route is None or self.should_skip(path):
            await self.app(scope, receive, send)
            return

        prefix, entity_type = route

        # Buffer the body so it can be both audited and replayed to the handler
        chunks = []
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] != "http.request":
                break
            chunks.append(message.get("body", b""))
            more_body = message.get("more_body", False)
        request_body = b"".join(chunks)

        body_replayed = False

        async def replay_receive():
            nonlocal body_replayed
            if not body_replayed:
                body_replayed = True
                return {"type": "http.request", "body": request_body, "more_body": False}
            return await receive()

        try:
            path_entity_id, provider, snapshot, snapshot_error = await self._prepare(
                path, prefix, entity_type, operation
            )
        except Exception as e:
            logger.error("change_capture_prepare_failed", path=path, error=str(e), exc_info=True)
            await self.app(scope, replay_receive, send)
            return

        status_code = 500
        response_chunks = []

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 500)
            elif message["type"] == "http.response.body":
                response_chunks.append(message.get("body", b""))
            await send(message)

        await self.app(scope, replay_receive, send_wrapper)

        try:
            self._capture(
                scope,
                status_code,
                b"".join(response_chunks),
                request_body,
                entity_type,
                operation,
                path_entity_id,
                provider=provider,
                snapshot=snapshot,
                snapshot_error=snapshot_error,
            )
        except Exception as e:
            logger.error("change_capture_failed", path=path, error=str(e), exc_info=True)

    async def _prepare(self, path: str, prefix: str, entity_type: EntityType, operation: Operation):
        """Entity id from the path and, for updates, the pre-change snapshot."""
        snapshot = None
        snapshot_error = None
        path_entity_id = _id_from_path(path, prefix)
        provider = self.registry.get(entity_type)
        if operation is Operation.UPDATE and provider is not None and path_entity_id is not None:
            try:
                snapshot = await provider.get_snapshot(path_entity_id)
            except Exception as e:
                snapshot_error = str(e)
                logger.warning(
                    "entity_snapshot_failed",
                    entity_type=entity_type.value,
                    entity_id=path_entity_id,
                    error=snapshot_error,
                )
        return path_entity_id, provider, snapshot, snapshot_error

    def _capture(
        self,
        scope,
        status_code: int,
        raw_response: bytes,
        request_body: bytes,
        entity_type: EntityType,
        operation: Operation,
        path_entity_id: Optional[int],
        provider=None,
        snapshot: Optional[Dict[str, Any]] = None,
        snapshot_error: Optional[str] = None,
    ) -> None:
        response_data = _parse_json(raw_response)
        if status_code >= 400:
            return
        if isinstance(response_data, dict) and response_data.get("success") is False:
            return

        principal = get_scope_principal(scope)
        if principal is None:
            return

        body = _parse_json(request_body)
        entity_id = self._resolve_entity_id(scope, path_entity_id, response_data, body)
        context = request_context(scope, self.cookie_name, self.service.metadata_ua_length)

        self.service.submit(
            self.record(
                principal,
                entity_type,
                entity_id,
                operation,
                body,
                context,
                provider=provider,
                snapshot=snapshot,
                snapshot_error=snapshot_error,
            )
        )

    def _resolve_entity_id(self, scope, path_entity_id, response_data, body) -> Optional[int]:
        path_params = scope.get("path_params") or {}
        for candidate in (path_params.get("id"), path_entity_id):
            entity_id = _coerce_id(candidate)
            if entity_id is not None:
                return entity_id

        if isinstance(response_data, dict) and isinstance(response_data.get("data"), dict):
            entity_id = _coerce_id(response_data["data"].get("id"))
            if entity_id is not None:
                return entity_id

        if isinstance(body, dict):
            return _coerce_id(body.get("id"))
        return None

    async def record(
        self,
        principal,
        entity_type: EntityType,
        entity_id: Optional[int],
        operation: Operation,
        body: Any,
        context: AuditContext,
        provider=None,
        snapshot: Optional[Dict[str, Any]] = None,
        snapshot_error: Optional[str] = None,
    ) -> None:
        """Write the ledger records for one captured request, in order."""
        actor_user_id = principal.user_id
        company_id = principal.company_id

        async def general(new_value: Any = None, **notes) -> None:
            await self.service.log_change(
                entity_type,
                entity_id,
                operation,
                actor_user_id,
                company_id,
                new_value=new_value,
                context=self._with_metadata(context, notes),
            )

        if operation is Operation.CREATE:
            await general(new_value=body)
            return
        if operation is Operation.DELETE:
            await general()
            return

        if provider is None or entity_id is None or not isinstance(body, dict):
            await general(new_value=body, note="Field-level changes not captured")
            return
        if snapshot_error is not None:
            await general(new_value=body, error="Field-level tracking failed")
            return
        if snapshot is None:
            await general(new_value=body, note="Pre-change state unavailable")
            return

        try:
            changes = compute_field_changes(snapshot, body, provider.tracked_fields)
        except Exception as e:
            logger.warning("field_diff_failed", entity_type=entity_type.value, entity_id=entity_id, error=str(e))
            await general(new_value=body, error="Field-level tracking failed")
            return

        if not changes:
            await general(note="No field changes detected")
            return

        for index, change in enumerate(changes, start=1):
            await self.service.log_change(
                entity_type,
                entity_id,
                Operation.UPDATE,
                actor_user_id,
                company_id,
                field_name=change.field_name,
                old_value=change.old_value,
                new_value=change.new_value,
                context=self._with_metadata(context, {"total_changes": index}),
            )

    @staticmethod
    def _with_metadata(context: AuditContext, extra: Dict[str, Any]) -> AuditContext:
        return AuditContext(
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            session_id=context.session_id,
            session_duration_seconds=context.session_duration_seconds,
            access_method=context.access_method,
            metadata={**context.metadata, **extra},
        )
