"""Outbox events, the SQL that stores and drains them, and the transactional publisher."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from servicekit.messaging.message import Message

_KNOWN_DRIVERS = frozenset({"postgres", "sqlserver", "mysql"})

_KEY_COLUMNS = {
    "postgres": '"key"',
    "sqlserver": "[key]",
    "mysql": "`key`",
}

_PLACEHOLDERS: dict[str, Callable[[int], str]] = {
    "postgres": lambda n: f"${n}",
    "sqlserver": lambda n: f"@p{n}",
    "mysql": lambda n: "?",
}


def normalize_driver(driver: str) -> str:
    """Return the canonical driver name; anything unrecognised becomes ``mysql``."""
    name = (driver or "").strip().lower()
    return name if name in _KNOWN_DRIVERS else "mysql"


def key_column(driver: str) -> str:
    """Return the ``key`` column name quoted for the driver's SQL dialect."""
    return _KEY_COLUMNS[normalize_driver(driver)]


@dataclass
class OutboxEvent:
    """A row of the ``outbox_events`` table."""

    id: str
    topic: str
    key: bytes
    payload: bytes
    headers: bytes
    status: str
    created_at: datetime
    sent_at: Optional[datetime] = None


def build_insert_pending_query(
    driver: str,
    event_id: str,
    topic: str,
    key: bytes,
    payload: bytes,
    headers_json: bytes,
    status: str,
    created_at: datetime,
) -> tuple[str, list[Any]]:
    """Return the statement and parameters that insert one pending event."""
    dialect = normalize_driver(driver)
    placeholder = _PLACEHOLDERS[dialect]
    values = ", ".join(placeholder(n) for n in range(1, 8))
    query = (
        f"INSERT INTO outbox_events (id, topic, {key_column(dialect)}, payload, headers, "
        f"status, created_at) VALUES ({values})"
    )
    return query, [event_id, topic, key, payload, headers_json, status, created_at]


def build_select_pending_query(driver: str, batch_size: int) -> tuple[str, list[Any]]:
    """Return the statement that locks and reads up to ``batch_size`` unpublished events."""
    dialect = normalize_driver(driver)
    col = key_column(dialect)
    if dialect == "postgres":
        query = (
            f"SELECT id, topic, {col}, payload, headers FROM outbox_events "
            "WHERE published_at IS NULL ORDER BY id FOR UPDATE SKIP LOCKED LIMIT $1"
        )
    elif dialect == "sqlserver":
        query = (
            f"SELECT TOP (@p1) id, topic, {col}, payload, headers FROM outbox_events "
            "WITH (UPDLOCK, READPAST, ROWLOCK) WHERE published_at IS NULL ORDER BY id"
        )
    else:
        query = (
            f"SELECT id, topic, {col}, payload, headers FROM outbox_events "
            "WHERE published_at IS NULL ORDER BY id LIMIT ? FOR UPDATE SKIP LOCKED"
        )
    return query, [batch_size]


def build_mark_published_query(driver: str, event_id: int) -> tuple[str, list[Any]]:
    """Return the statement that stamps one event as published."""
    dialect = normalize_driver(driver)
    if dialect == "postgres":
        query = "UPDATE outbox_events SET published_at = NOW() WHERE id = $1"
    elif dialect == "sqlserver":
        query = "UPDATE outbox_events SET published_at = SYSDATETIME() WHERE id = @p1"
    else:
        query = "UPDATE outbox_events SET published_at = CURRENT_TIMESTAMP WHERE id = ?"
    return query, [event_id]


class OutboxPublisher:
    """Writes messages into the outbox table inside the caller's transaction."""

    def __init__(self, driver: str = "mysql") -> None:
        self.driver = normalize_driver(driver)

    def publish_tx(self, cursor: Any, msg: Message) -> None:
        """Insert ``msg`` as a pending event using a DB-API cursor of an open transaction."""
        headers_json = json.dumps(msg.headers, separators=(",", ":")).encode()
        query, args = build_insert_pending_query(
            self.driver,
            str(uuid.uuid4()),
            msg.topic,
            msg.key,
            msg.payload,
            headers_json,
            "PENDING",
            datetime.now(),
        )
        cursor.execute(query, args)