"""Outbound HTTP client used by ``http_request`` actions."""

from typing import Any, Dict, Optional

import requests

from ..core.logging import get_logger

logger = get_logger(__name__)


class HttpResponse:
    """Status, reason and parsed body of a completed request."""

    def __init__(self, status: int, status_text: str, data: Any):
        self.status = status
        self.status_text = status_text
        self.data = data

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "statusText": self.status_text, "data": self.data}


class HttpClient:
    """Thin wrapper over a shared ``requests.Session``."""

    def __init__(self, session: Optional[requests.Session] = None, default_timeout: float = 30.0):
        self.session = session or requests.Session()
        self.default_timeout = default_timeout

    def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                body: Any = None, timeout: Optional[float] = None) -> HttpResponse:
        """
        Issue one request and return the response regardless of its status.

        Raises:
            requests.RequestException: On transport failures
        """
        method = (method or "GET").upper()
        kwargs: Dict[str, Any] = {
            "headers": {"Content-Type": "application/json", **(headers or {})},
            "timeout": timeout or self.default_timeout,
        }
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["data"] = body

        logger.debug(f"HTTP {method} {url}")
        response = self.session.request(method, url, **kwargs)

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return HttpResponse(response.status_code, response.reason or "", data)
