"""Dispatch port adapters.

`OutboxDispatcher` enqueues rendered messages into an SQL outbox table
that a separate delivery worker drains. `NoOpDispatcher` accepts every
message without side effects and backs dry runs.
"""

from __future__ import annotations

import hashlib
import itertools
import logging
import threading
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import MetaData, Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .dto import DispatchHints, RenderedMessage
from .errors import DispatchError

OUTBOX_TOPIC = "followup.message.requested"


def idempotency_key(hints: DispatchHints, message: RenderedMessage) -> str:
    """Deterministic key for one message of one execution step.

    Args:
        hints: Dispatch hints
        message: Rendered message

    Returns:
        SHA-256 hex digest
    """
    canonical = "|".join(
        [
            hints.company_id.strip().lower(),
            hints.execution_id.strip().lower(),
            str(hints.step_number),
            message.language.value,
        ]
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def message_payload(message: RenderedMessage, hints: DispatchHints) -> dict[str, Any]:
    """JSON payload stored for a rendered message."""
    return {
        "company_id": hints.company_id,
        "invoice_id": hints.invoice_id,
        "sequence_id": hints.sequence_id,
        "execution_id": hints.execution_id,
        "step_number": hints.step_number,
        "priority": hints.priority.value,
        "max_retries": hints.max_retries,
        "scheduled_for": hints.scheduled_for.isoformat(),
        "recipient_email": message.recipient_email,
        "recipient_name": message.recipient_name,
        "language": message.language.value,
        "subject": message.subject,
        "content": message.content,
        "template_id": message.template_id,
        "metadata": hints.metadata,
    }


class NoOpDispatcher:
    """Accepts every message and keeps it in memory."""

    def __init__(self, prefix: str = "noop"):
        self.prefix = prefix
        self.sent: list[tuple[str, RenderedMessage, DispatchHints]] = []
        self.cancelled: set[str] = set()
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def dispatch(self, message: RenderedMessage, hints: DispatchHints) -> str:
        with self._lock:
            handle = f"{self.prefix}-{next(self._counter)}"
            self.sent.append((handle, message, hints))
        self.logger.info(
            "Dry run: message not sent",
            extra={"handle": handle, "execution_id": hints.execution_id, "step_number": hints.step_number},
        )
        return handle

    def cancel(self, handle: str) -> bool:
        with self._lock:
            if handle in self.cancelled or all(h != handle for h, _, _ in self.sent):
                return False
            self.cancelled.add(handle)
            return True


def get_outbox_table(metadata: MetaData) -> Table:
    """Return the follow-up outbox table definition for the given metadata."""
    return sa.Table(
        "followup_outbox",
        metadata,
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("topic", sa.Text(), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("priority", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, default=0),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )


class OutboxDispatcher:
    """Enqueues messages into the follow-up outbox table.

    Each (execution, step, language) maps to one outbox row. Re-dispatching
    a cancelled row re-opens it instead of inserting a duplicate.
    """

    def __init__(self, engine: Engine | str, topic: str = OUTBOX_TOPIC):
        if isinstance(engine, str):
            engine = sa.create_engine(engine, future=True)
        self.engine = engine
        self.topic = topic
        self.metadata = MetaData()
        self.table = get_outbox_table(self.metadata)
        self.logger = logging.getLogger(__name__)

    def create_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def dispatch(self, message: RenderedMessage, hints: DispatchHints) -> str:
        """Enqueue a message.

        Args:
            message: Rendered message
            hints: Scheduling hints

        Returns:
            Outbox row ID used as dispatch handle

        Raises:
            DispatchError: If the message has no recipient or the write fails
        """
        if not message.recipient_email:
            raise DispatchError(f"No recipient email for invoice {hints.invoice_id}")

        key = idempotency_key(hints, message)
        next_attempt = hints.scheduled_for.astimezone(UTC).replace(tzinfo=None)
        now = datetime.now(UTC).replace(tzinfo=None)
        handle = str(uuid4())

        try:
            with self.engine.begin() as conn:
                conn.execute(
                    sa.insert(self.table).values(
                        id=handle,
                        topic=self.topic,
                        idempotency_key=key,
                        payload=message_payload(message, hints),
                        priority=hints.priority.value,
                        status="pending",
                        attempt_count=0,
                        next_attempt_at=next_attempt,
                        created_at=now,
                    )
                )
        except IntegrityError:
            handle = self._reopen(key, next_attempt)
        except SQLAlchemyError as exc:
            raise DispatchError(f"Outbox write failed: {exc}") from exc

        self.logger.info(
            "followup_message_enqueued",
            extra={
                "handle": handle,
                "execution_id": hints.execution_id,
                "step_number": hints.step_number,
                "priority": hints.priority.value,
            },
        )
        return handle

    def _reopen(self, key: str, next_attempt: datetime) -> str:
        """Return the existing row for a key, re-opening it if cancelled."""
        with self.engine.begin() as conn:
            row = conn.execute(
                sa.select(self.table.c.id, self.table.c.status).where(self.table.c.idempotency_key == key)
            ).first()
            if row is None:
                raise DispatchError("Outbox conflict without existing row")
            if row.status == "cancelled":
                conn.execute(
                    sa.update(self.table)
                    .where(self.table.c.id == row.id)
                    .values(status="pending", next_attempt_at=next_attempt)
                )
            return row.id

    def cancel(self, handle: str) -> bool:
        """Cancel a pending outbox row.

        Returns:
            True if a pending row was cancelled
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(self.table)
                .where(self.table.c.id == handle, self.table.c.status == "pending")
                .values(status="cancelled")
            )
        return result.rowcount > 0

    def get(self, handle: str) -> dict[str, Any] | None:
        """Read back an outbox row."""
        with self.engine.connect() as conn:
            row = conn.execute(sa.select(self.table).where(self.table.c.id == handle)).first()
        return dict(row._mapping) if row else None


__all__ = ["NoOpDispatcher", "OutboxDispatcher", "get_outbox_table", "idempotency_key"]
