"""Fallback browser-info (fingerprint) payload for the 3DS auth request."""

import base64
import json
from datetime import datetime
from typing import Any, Dict, Optional

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8"


def local_timezone_offset_minutes() -> int:
    """Minutes to add to local time to reach UTC (browser getTimezoneOffset convention)."""
    offset = datetime.now().astimezone().utcoffset()
    if offset is None:
        return 0
    return -int(offset.total_seconds() // 60)


class BrowserInfoCollector:
    """
    Produces the browser-info blob used when the 3DS Server never delivers one.

    Values default to a desktop Chrome profile. The Playwright backend passes
    the values it read from a real page as overrides.
    """

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        self.overrides = dict(overrides or {})

    def collect_browser_info(self) -> Dict[str, Any]:
        o = self.overrides
        return {
            "browserUserAgent": o.get("userAgent") or DEFAULT_USER_AGENT,
            "browserLanguage": o.get("language") or "en-US",
            "browserScreenWidth": str(o.get("screenWidth") or 0),
            "browserScreenHeight": str(o.get("screenHeight") or 0),
            "browserColorDepth": str(o.get("colorDepth") or 24),
            "browserTZ": str(o.get("timezoneOffset", local_timezone_offset_minutes())),
            "browserAcceptHeader": DEFAULT_ACCEPT_HEADER,
            "browserJavaEnabled": bool(o.get("javaEnabled", False)),
            "browserJavascriptEnabled": True,
            "browserIP": o.get("ip") or "",
        }

    def collect_and_encode(self) -> str:
        """Base64-encoded JSON, the same shape the 3DS Method step delivers."""
        encoded = json.dumps(self.collect_browser_info(), separators=(",", ":"))
        return base64.b64encode(encoded.encode("utf-8")).decode("ascii")
