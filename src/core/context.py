"""Request context for log enrichment, backed by contextvars.

Only logging reads these values. Business operations receive the
authenticated principal as an explicit argument and never look it up here.
"""

from contextvars import ContextVar, Token
from typing import Any
from uuid import UUID, uuid4


request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
user_role_var: ContextVar[str | None] = ContextVar("user_role", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

_OPTIONAL_VARS: dict[str, ContextVar[str | None]] = {
    "user_id": user_id_var,
    "user_role": user_role_var,
    "trace_id": trace_id_var,
}


def generate_request_id() -> str:
    """Generate a new unique request ID."""
    return str(uuid4())


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


def set_request_id(request_id: str | None = None) -> str:
    """Set the request ID for the current context.

    Args:
        request_id: Optional request ID. If not provided, generates a new one.

    Returns:
        The request ID that was set.
    """
    rid = request_id or generate_request_id()
    request_id_var.set(rid)
    return rid


def get_user_id() -> str | None:
    """Get the current user ID."""
    return user_id_var.get()


def set_user(user_id: str | UUID | None, role: str | None = None) -> None:
    """Record the authenticated user for log lines of this request."""
    user_id_var.set(str(user_id) if user_id is not None else None)
    user_role_var.set(role)


def get_trace_id() -> str | None:
    """Get the current trace ID."""
    return trace_id_var.get()


def set_trace_id(trace_id: str | None) -> None:
    """Set the trace ID from distributed tracing headers."""
    trace_id_var.set(trace_id)


def get_context() -> dict[str, Any]:
    """Get all non-empty context values as a dictionary."""
    context: dict[str, Any] = {}

    request_id = get_request_id()
    if request_id:
        context["request_id"] = request_id

    for name, var in _OPTIONAL_VARS.items():
        value = var.get()
        if value:
            context[name] = value

    return context


def clear_context() -> None:
    """Reset all context variables at the end of a request."""
    request_id_var.set("")
    for var in _OPTIONAL_VARS.values():
        var.set(None)


class RequestContext:
    """Context manager binding request values for a block of code.

    Usage:
        with RequestContext(user_id=principal.id, user_role="student"):
            logger.info("enrollment_created")  # includes request_id, user_id
    """

    def __init__(
        self,
        request_id: str | None = None,
        user_id: str | UUID | None = None,
        user_role: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        self._values: dict[str, str | None] = {
            "user_id": str(user_id) if user_id is not None else None,
            "user_role": user_role,
            "trace_id": trace_id,
        }
        self.request_id = request_id
        self._request_token: Token[str] | None = None
        self._tokens: dict[str, Token[str | None]] = {}

    def __enter__(self) -> "RequestContext":
        self._request_token = request_id_var.set(
            self.request_id or generate_request_id()
        )
        for name, value in self._values.items():
            if value is not None:
                self._tokens[name] = _OPTIONAL_VARS[name].set(value)
        return self

    def __exit__(self, *_: object) -> None:
        for name, token in self._tokens.items():
            _OPTIONAL_VARS[name].reset(token)
        self._tokens.clear()
        if self._request_token is not None:
            request_id_var.reset(self._request_token)
            self._request_token = None
