from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Callable, Iterable

from sqlalchemy import DateTime, Table, delete, func, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cronshift.core.errors import DataStoreError, TableRestoreError
from cronshift.domain.models import AuditHistory, Base, DegradationLog


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


def _json_value(value: Any) -> Any:
    # Keep table dumps JSON-serializable without losing timestamp precision.
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return value


class DataStore:
    """Operational tables behind an async SQLAlchemy session factory."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def _table(self, name: str) -> Table:
        table = Base.metadata.tables.get(name)
        if table is None:
            raise DataStoreError(f"Unknown table: {name}")
        return table

    def column_names(self, name: str) -> list[str]:
        return [column.name for column in self._table(name).columns]

    async def ping(self) -> bool:
        # Cheap read used as the connectivity check in every health check.
        try:
            async with self._session_factory() as session:
                await session.execute(select(AuditHistory.id).limit(1))
        except SQLAlchemyError as exc:
            raise DataStoreError(f"Database connection failed: {exc}") from exc
        return True

    async def fetch_rows(self, name: str) -> list[dict[str, Any]]:
        table = self._table(name)
        primary = list(table.primary_key.columns)
        stmt = select(table)
        if primary:
            stmt = stmt.order_by(*primary)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.mappings().all()
        except SQLAlchemyError as exc:
            raise DataStoreError(f"Failed to read {name}: {exc}") from exc
        return [{key: _json_value(value) for key, value in row.items()} for row in rows]

    async def count_rows(self, name: str) -> int:
        table = self._table(name)
        try:
            async with self._session_factory() as session:
                count = (await session.execute(select(func.count()).select_from(table))).scalar_one()
        except SQLAlchemyError as exc:
            raise DataStoreError(f"Failed to count {name}: {exc}") from exc
        return int(count)

    def _prepare_rows(
        self,
        table: Table,
        rows: Iterable[dict[str, Any]],
        identity: str | None,
    ) -> list[dict[str, Any]]:
        # Strip identity so the store assigns fresh keys, and drop columns the table no longer has.
        datetime_columns = {column.name for column in table.columns if isinstance(column.type, DateTime)}
        known = set(table.columns.keys())
        prepared: list[dict[str, Any]] = []
        dropped: set[str] = set()
        for row in rows:
            record: dict[str, Any] = {}
            for key, value in row.items():
                if key == identity:
                    continue
                if key not in known:
                    dropped.add(key)
                    continue
                record[key] = _parse_datetime(value) if key in datetime_columns else value
            prepared.append(record)
        if dropped:
            logger.warning("restore_columns_dropped table=%s columns=%s", table.name, sorted(dropped))
        # Bulk inserts bind one parameter shape for every row.
        columns = sorted({key for record in prepared for key in record})
        return [{key: record.get(key) for key in columns} for record in prepared]

    async def replace_rows(
        self,
        name: str,
        rows: list[dict[str, Any]],
        *,
        identity: str | None = "id",
    ) -> int:
        """Replace every row of ``name`` with ``rows`` in a single transaction.

        A failure anywhere rolls the table back to its previous contents, so the
        call can be repeated safely after a crash or partial run.
        """
        table = self._table(name)
        try:
            prepared = self._prepare_rows(table, rows, identity)
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(table))
                    if prepared:
                        await session.execute(insert(table), prepared)
        except (SQLAlchemyError, ValueError, TypeError) as exc:
            raise TableRestoreError(name, str(exc)) from exc
        return len(prepared)

    async def record_degradation(
        self,
        *,
        previous_level: str,
        new_level: str,
        reason: str,
        system_load: dict[str, Any] | None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    DegradationLog(
                        previous_level=previous_level,
                        new_level=new_level,
                        reason=reason,
                        system_load=system_load,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise DataStoreError(f"Failed to record degradation: {exc}") from exc
