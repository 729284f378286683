"""
Device Context
==============
Coarse device and location details derived from request headers.
"""

import re
from typing import Any, Dict, Optional

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad")
_BROWSER_RE = re.compile(r"(Chrome|Firefox|Safari|Edge)/[\d.]+")
_OS_RE = re.compile(r"(Windows|Mac|Linux|Android|iOS)[\s\w]*[\d._]*")


def extract_device_info(user_agent: Optional[str], max_length: int = 255) -> Dict[str, Any]:
    """
    Parse a user agent into mobile flag, browser and OS.

    Unrecognized agents yield ``"Unknown"`` for browser and OS.
    """
    if not user_agent:
        return {}

    browser = _BROWSER_RE.search(user_agent)
    os_match = _OS_RE.search(user_agent)

    return {
        "is_mobile": bool(_MOBILE_RE.search(user_agent)),
        "browser": browser.group(0) if browser else "Unknown",
        "os": os_match.group(0).strip() if os_match else "Unknown",
        "user_agent": user_agent[:max_length],
    }


def location_info(ip_address: Optional[str]) -> Dict[str, Any]:
    # No geo lookup; the IP is all we know
    if not ip_address:
        return {}
    return {"ip_address": str(ip_address)}
