"""Request and transaction identifiers carried through the current context."""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_request_id: ContextVar[str] = ContextVar("request_id", default="")
_transaction_id: ContextVar[str] = ContextVar("transaction_id", default="")


@contextmanager
def request_id_scope(request_id: str) -> Iterator[str]:
    """Set the request ID for the duration of the block."""
    token = _request_id.set(request_id)
    try:
        yield request_id
    finally:
        _request_id.reset(token)


def get_request_id() -> str:
    """Return the current request ID, or an empty string."""
    return _request_id.get()


def generate_request_id() -> str:
    """Return a new random UUID string."""
    return str(uuid.uuid4())


@contextmanager
def transaction_id_scope(transaction_id: str) -> Iterator[str]:
    """Set the transaction ID for the duration of the block."""
    token = _transaction_id.set(transaction_id)
    try:
        yield transaction_id
    finally:
        _transaction_id.reset(token)


def get_transaction_id() -> str:
    """Return the current transaction ID, or an empty string."""
    return _transaction_id.get()