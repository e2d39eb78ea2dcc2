"""Request-ID propagation via contextvars (safe across asyncio tasks)."""

import uuid
from contextvars import ContextVar, Token
from typing import Optional

_request_id: ContextVar[Optional[str]] = ContextVar("ibex_request_id", default=None)


def generate_request_id() -> str:
    return str(uuid.uuid4())


def set_request_id(request_id: Optional[str]) -> Token:
    return _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def clear_request_id() -> None:
    _request_id.set(None)


class RequestContext:
    """Bind a request id for the duration of a `with` block; nesting restores the outer id."""

    def __init__(self, request_id: Optional[str] = None):
        self.request_id = request_id or generate_request_id()
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        self._token = _request_id.set(self.request_id)
        return self.request_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _request_id.reset(self._token)
            self._token = None
        return False
