"""
Monthly quota accounting for the metered remote service.

`QuotaTracker` reads and bumps a per-service, per-month counter held by a
`QuotaStore`. The store owns atomicity; the tracker adds no locking of its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from threading import Lock
from typing import Callable, Dict, Optional, Protocol, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    create_engine,
    func,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import QuotaLookupError

logger = logging.getLogger(__name__)

metadata = MetaData()

api_usage = Table(
    "api_usage",
    metadata,
    Column("service_name", String(64), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("count", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, server_default=func.current_timestamp()),
    PrimaryKeyConstraint("service_name", "year", "month"),
)


class QuotaStore(Protocol):
    def get_usage(self, service_name: str, month: int, year: int) -> Optional[int]:
        """Return the stored count, or None when the month has no record."""

    def increment_usage(self, service_name: str, month: int, year: int) -> None:
        """Atomically add one to the month's count, creating it at 1."""


class SqlQuotaStore:
    """QuotaStore backed by a SQL table; works on PostgreSQL and SQLite."""

    def __init__(self, engine: Engine, create_tables: bool = False):
        self.engine = engine
        if create_tables:
            metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str, create_tables: bool = False) -> "SqlQuotaStore":
        return cls(create_engine(url, future=True, pool_pre_ping=True), create_tables=create_tables)

    def get_usage(self, service_name: str, month: int, year: int) -> Optional[int]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text(
                        "SELECT count FROM api_usage "
                        "WHERE service_name = :name AND year = :year AND month = :month"
                    ),
                    {"name": service_name, "year": year, "month": month},
                ).first()
        except SQLAlchemyError as exc:
            raise QuotaLookupError(f"Failed to read usage for {service_name}") from exc
        return int(row[0]) if row else None

    def increment_usage(self, service_name: str, month: int, year: int) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        "INSERT INTO api_usage (service_name, year, month, count, created_at, updated_at) "
                        "VALUES (:name, :year, :month, 1, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP) "
                        "ON CONFLICT (service_name, year, month) DO UPDATE "
                        "SET count = api_usage.count + 1, updated_at = CURRENT_TIMESTAMP"
                    ),
                    {"name": service_name, "year": year, "month": month},
                )
        except SQLAlchemyError as exc:
            raise QuotaLookupError(f"Failed to increment usage for {service_name}") from exc


class InMemoryQuotaStore:
    """Process-local store for development and tests."""

    def __init__(self, counts: Optional[Dict[Tuple[str, int, int], int]] = None):
        self._counts: Dict[Tuple[str, int, int], int] = dict(counts or {})
        self._lock = Lock()

    def get_usage(self, service_name: str, month: int, year: int) -> Optional[int]:
        return self._counts.get((service_name, year, month))

    def increment_usage(self, service_name: str, month: int, year: int) -> None:
        with self._lock:
            key = (service_name, year, month)
            self._counts[key] = self._counts.get(key, 0) + 1


@dataclass
class QuotaUsage:
    service_name: str
    year: int
    month: int
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaTracker:
    """Decide eligibility for the metered service and record confirmed calls."""

    def __init__(
        self,
        store: QuotaStore,
        monthly_limit: int = 49,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.monthly_limit = monthly_limit
        self.clock = clock

    def _period(self) -> Tuple[int, int]:
        now = self.clock()
        return now.year, now.month

    def usage(self, service_name: str) -> QuotaUsage:
        """Snapshot of the current month. Raises QuotaLookupError on store failure."""
        year, month = self._period()
        try:
            count = self.store.get_usage(service_name, month, year)
        except QuotaLookupError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise QuotaLookupError(f"Failed to read usage for {service_name}") from exc
        return QuotaUsage(
            service_name=service_name,
            year=year,
            month=month,
            count=count or 0,
            limit=self.monthly_limit,
        )

    def check_eligible(self, service_name: str) -> bool:
        """True while this month's count is under the limit; False if the store fails."""
        try:
            usage = self.usage(service_name)
        except QuotaLookupError:
            logger.exception("quota: lookup failed for %s, treating as exhausted", service_name)
            return False
        eligible = usage.count < self.monthly_limit
        logger.debug(
            "quota: %s %04d-%02d used=%d limit=%d eligible=%s",
            service_name,
            usage.year,
            usage.month,
            usage.count,
            self.monthly_limit,
            eligible,
        )
        return eligible

    def record_usage(self, service_name: str) -> None:
        """Count one successful remote call. Failures are logged, not raised."""
        year, month = self._period()
        try:
            self.store.increment_usage(service_name, month, year)
        except Exception as exc:  # noqa: BLE001
            logger.error("quota: failed to record usage for %s: %s", service_name, exc)
