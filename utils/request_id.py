import re
import uuid
from contextvars import ContextVar

REQUEST_ID_HEADER = "X-Request-ID"
TRACE_ID_HEADER = "X-Trace-Id"
_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def normalize_request_id(raw: str | None) -> str:
    value = (raw or "").strip()
    if value and _REQUEST_ID_RE.match(value):
        return value
    return f"req-{uuid.uuid4().hex}"


def request_id_from_headers(headers) -> str:
    """Prefer X-Request-ID, then the app's X-Trace-Id, else generate one."""
    headers = headers or {}
    for name in (REQUEST_ID_HEADER, REQUEST_ID_HEADER.lower(), TRACE_ID_HEADER, TRACE_ID_HEADER.lower()):
        value = headers.get(name)
        if value:
            return normalize_request_id(value)
    return normalize_request_id(None)


def set_request_id(value: str | None) -> None:
    _REQUEST_ID_CTX.set(value)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()
