"""
Per-service evaluation context

Each polling task runs inside a ServiceContext so log records emitted
anywhere in the pipeline carry the service id, without passing it through
every call. Built on contextvars, so concurrent asyncio tasks stay isolated.
"""

import contextvars
from typing import Optional

_service_context: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "service_id", default=None
)


def set_service(service_id: Optional[str]) -> contextvars.Token[Optional[str]]:
    """
    Set the service being evaluated in the current context

    Returns:
        Token that can be used to reset the context
    """
    return _service_context.set(service_id)


def get_service() -> Optional[str]:
    """Service id of the current context, or None outside an evaluation"""
    return _service_context.get()


def reset_service(token: contextvars.Token[Optional[str]]) -> None:
    _service_context.reset(token)


class ServiceContext:
    """Context manager scoping log correlation to one service"""

    def __init__(self, service_id: str):
        self.service_id = service_id
        self.token: Optional[contextvars.Token[Optional[str]]] = None

    def __enter__(self) -> str:
        self.token = set_service(self.service_id)
        return self.service_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            reset_service(self.token)
            self.token = None

