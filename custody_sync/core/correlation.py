import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to inject correlation ID into request state"""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-Id", str(uuid.uuid4()))
        correlation_id_var.set(correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-Id"] = correlation_id
        return response


def get_correlation_id() -> str:
    """Get current correlation ID from context"""
    return correlation_id_var.get()


@contextmanager
def sync_cycle_context() -> Iterator[str]:
    """Bind a fresh sync-cycle id as the correlation ID for the duration of a cycle"""
    cycle_id = f"sync-{uuid.uuid4()}"
    token = correlation_id_var.set(cycle_id)
    try:
        yield cycle_id
    finally:
        correlation_id_var.reset(token)
