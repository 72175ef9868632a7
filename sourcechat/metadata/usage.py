from __future__ import annotations

"""Token usage records and sinks."""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from sourcechat.rag.types import UsageOperation


logger = logging.getLogger(__name__)


class UsageStoreError(RuntimeError):
    """Raised when usage storage fails."""
    pass


@dataclass(frozen=True)
class UsageRecord:
    """Token counts for a single successful model call."""
    model_config_id: str
    provider_id: str
    model: str
    input_tokens: int
    output_tokens: int
    operation: UsageOperation

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageSink(Protocol):
    def record(self, record: UsageRecord) -> None:
        ...


@dataclass
class InMemoryUsageSink:
    """Keep usage records in memory, bounded to the most recent entries."""
    max_records: int = 10000
    records: list[UsageRecord] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, record: UsageRecord) -> None:
        with self._lock:
            self.records.append(record)
            if len(self.records) > self.max_records:
                del self.records[: len(self.records) - self.max_records]

    def totals_by_operation(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        with self._lock:
            for item in self.records:
                totals[item.operation] = totals.get(item.operation, 0) + item.total_tokens
        return totals


class LoggingUsageSink:
    """Emit usage records as structured log lines."""

    def record(self, record: UsageRecord) -> None:
        logger.info(
            "usage_recorded",
            extra={
                "model_config_id": record.model_config_id,
                "provider": record.provider_id,
                "model": record.model,
                "input_tokens": record.input_tokens,
                "output_tokens": record.output_tokens,
                "operation": record.operation,
            },
        )


class SQLUsageSink:
    """Persist usage records to a SQL database."""
    def __init__(self, connection_uri: str) -> None:
        """Initialize the usage store and ensure tables exist."""
        from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine

        self._engine = create_engine(connection_uri)
        self._metadata = MetaData()
        self._table = Table(
            "usage_records",
            self._metadata,
            Column("id", String(36), primary_key=True),
            Column("model_config_id", String(128), nullable=False),
            Column("provider_id", String(64), nullable=False),
            Column("model", String(128), nullable=False),
            Column("input_tokens", Integer, nullable=False),
            Column("output_tokens", Integer, nullable=False),
            Column("total_tokens", Integer, nullable=False),
            Column("operation", String(32), nullable=False),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        self._metadata.create_all(self._engine)

    def record(self, record: UsageRecord) -> None:
        """Insert a new usage row."""
        payload = {
            "id": str(uuid.uuid4()),
            "model_config_id": record.model_config_id,
            "provider_id": record.provider_id,
            "model": record.model,
            "input_tokens": record.input_tokens,
            "output_tokens": record.output_tokens,
            "total_tokens": record.total_tokens,
            "operation": record.operation,
            "created_at": datetime.now(timezone.utc),
        }
        try:
            with self._engine.begin() as conn:
                conn.execute(self._table.insert().values(**payload))
        except Exception as exc:
            raise UsageStoreError(str(exc)) from exc

    def totals_by_operation(self) -> dict[str, int]:
        """Return total tokens grouped by operation."""
        from sqlalchemy import func, select

        query = select(self._table.c.operation, func.sum(self._table.c.total_tokens)).group_by(
            self._table.c.operation
        )
        with self._engine.connect() as conn:
            rows = conn.execute(query).all()
        return {str(operation): int(total or 0) for operation, total in rows}


def safe_record(sink: UsageSink | None, record: UsageRecord) -> None:
    """Record usage without letting sink failures escape."""
    if sink is None:
        return
    try:
        sink.record(record)
    except Exception as exc:
        logger.warning(
            "usage_record_failed",
            extra={"operation": record.operation, "detail": type(exc).__name__},
        )
