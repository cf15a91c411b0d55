from __future__ import annotations

import contextvars
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RequestScope:
    request_id: str
    path: str
    method: str
    started_at: datetime = field(default_factory=_now_utc)
    user_id: int | None = None


_request_scope_var: contextvars.ContextVar[RequestScope | None] = contextvars.ContextVar(
    "request_scope",
    default=None,
)


def resolve_request_id(*candidates: str | None) -> str:
    """Reuse a well-formed inbound correlation id, otherwise mint one."""
    for candidate in candidates:
        value = (candidate or "").strip()
        if value and _REQUEST_ID_RE.match(value):
            return value
    return str(uuid.uuid4())


def start_request_scope(request_id: str, path: str, method: str) -> RequestScope:
    scope = RequestScope(request_id=request_id, path=path, method=method)
    _request_scope_var.set(scope)
    return scope


def get_request_scope() -> RequestScope | None:
    return _request_scope_var.get()


def current_request_id() -> str | None:
    scope = _request_scope_var.get()
    return scope.request_id if scope else None


def bind_user(user_id: int) -> None:
    scope = _request_scope_var.get()
    if scope:
        scope.user_id = int(user_id)


def clear_request_scope() -> None:
    _request_scope_var.set(None)
