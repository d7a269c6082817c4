"""
Correlation IDs — tie every audit event of one logical operation together.

The current ID lives in a ContextVar, so it follows asyncio tasks and
``asyncio.to_thread`` calls started inside the scope.
"""
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar(
    "navigator_phi_correlation_id", default=None
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(cid: Optional[str]):
    """Set the ID for the current context; returns a token for ``reset``."""
    return _correlation_id.set(cid)


def reset_correlation_id(token) -> None:
    _correlation_id.reset(token)


@contextmanager
def correlation_scope(cid: Optional[str] = None) -> Iterator[str]:
    """Run a block under ``cid``, or a fresh ID when none is given.

    Nested scopes without an explicit ID keep the enclosing one.
    """
    if cid is None:
        cid = get_correlation_id() or new_correlation_id()
    token = _correlation_id.set(cid)
    try:
        yield cid
    finally:
        _correlation_id.reset(token)
