"""
Append-only history ledger.

Every tracked entity has at most one open history row (valid_to IS NULL) and,
for each child collection, the open child rows hang off that open parent row.
Rows are only ever closed by setting valid_to; nothing is rewritten or deleted.
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from strata.modules.inventory.domain.diff import RecordDiff
from strata.modules.inventory.domain.kinds import ChildCollection, ResourceKind
from strata.modules.inventory.domain.records import Record
from strata.shared.core.exceptions import LedgerIntegrityError

logger = structlog.get_logger()


class HistoryLedger:
    def __init__(self, session: AsyncSession, kind: ResourceKind):
        self.session = session
        self.kind = kind
        self.model = kind.history_model

    def _open_rows(self, scope: str, resource_id: str) -> Any:
        return and_(
            self.model.scope == scope,
            self.model.resource_id == resource_id,
            self.model.valid_to.is_(None),
        )

    async def _open_history(self, scope: str, resource_id: str) -> list[Any]:
        result = await self.session.execute(
            select(self.model)
            .where(self._open_rows(scope, resource_id))
            .order_by(self.model.history_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def current(self, scope: str, resource_id: str) -> Optional[Any]:
        """The open history row, or None when the entity is not tracked."""
        rows = await self._open_history(scope, resource_id)
        if len(rows) > 1:
            raise self._integrity_fault(scope, resource_id, len(rows))
        return rows[0] if rows else None

    async def open_count(self, scope: str, resource_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(self.model)
            .where(self._open_rows(scope, resource_id))
        )
        return int(result.scalar_one())

    def _integrity_fault(self, scope: str, resource_id: str, open_rows: int) -> LedgerIntegrityError:
        return LedgerIntegrityError(
            f"Expected one open history record for {self.kind.name} {resource_id}, found {open_rows}",
            details={
                "kind": self.kind.name,
                "scope": scope,
                "resource_id": resource_id,
                "open_rows": open_rows,
            },
        )

    async def _insert_parent(
        self, record: Record, now: datetime, first_collected_at: datetime
    ) -> int:
        result = await self.session.execute(
            insert(self.model)
            .values(
                scope=record.scope,
                resource_id=record.resource_id,
                valid_from=now,
                valid_to=None,
                collected_at=record.collected_at,
                first_collected_at=first_collected_at,
                **{name: record.fields.get(name) for name in self.kind.fields},
            )
            .returning(self.model.history_id)
        )
        return int(result.scalar_one())

    async def _open_children(
        self, collection: ChildCollection, history_id: int, record: Record, now: datetime
    ) -> None:
        rows = [
            {
                "history_id": history_id,
                "valid_from": now,
                "valid_to": None,
                **{name: row.get(name) for name in collection.fields},
            }
            for row in record.children.get(collection.name, [])
        ]
        if rows:
            await self.session.execute(insert(collection.history_model), rows)

    async def _close_children(
        self, collection: ChildCollection, history_id: int, now: datetime
    ) -> None:
        model = collection.history_model
        await self.session.execute(
            update(model)
            .where(model.history_id == history_id, model.valid_to.is_(None))
            .values(valid_to=now)
        )

    async def _close_parent(self, history_id: int, now: datetime) -> None:
        await self.session.execute(
            update(self.model)
            .where(self.model.history_id == history_id)
            .values(valid_to=now)
        )

    async def open(self, record: Record, now: datetime) -> int:
        """Start tracking an entity seen for the first time."""
        if await self.open_count(record.scope, record.resource_id):
            raise LedgerIntegrityError(
                f"History for {self.kind.name} {record.resource_id} is already open",
                details={
                    "kind": self.kind.name,
                    "scope": record.scope,
                    "resource_id": record.resource_id,
                },
            )
        history_id = await self._insert_parent(record, now, record.collected_at)
        for collection in self.kind.children:
            await self._open_children(collection, history_id, record, now)
        return history_id

    async def supersede(self, record: Record, diff: RecordDiff, now: datetime) -> int:
        """
        Record a change to a tracked entity.

        A change to the entity's own fields closes the open version (and all of
        its open children) and opens a new version that carries the original
        first_collected_at. A change confined to child collections closes and
        reopens only the affected collections under the current version.
        """
        rows = await self._open_history(record.scope, record.resource_id)
        if len(rows) != 1:
            raise self._integrity_fault(record.scope, record.resource_id, len(rows))
        current = rows[0]

        if diff.is_changed:
            await self._close_parent(current.history_id, now)
            for collection in self.kind.children:
                await self._close_children(collection, current.history_id, now)
            history_id = await self._insert_parent(record, now, current.first_collected_at)
            for collection in self.kind.children:
                await self._open_children(collection, history_id, record, now)
            return history_id

        for name in diff.changed_children():
            collection = self.kind.child(name)
            await self._close_children(collection, current.history_id, now)
            await self._open_children(collection, current.history_id, record, now)
        return current.history_id

    async def close(self, scope: str, resource_id: str, now: datetime) -> bool:
        """Close the open version of an entity that has disappeared upstream."""
        rows = await self._open_history(scope, resource_id)
        if not rows:
            logger.debug(
                "ledger_close_skipped",
                kind=self.kind.name,
                scope=scope,
                resource_id=resource_id,
            )
            return False
        if len(rows) > 1:
            raise self._integrity_fault(scope, resource_id, len(rows))

        history_id = rows[0].history_id
        await self._close_parent(history_id, now)
        for collection in self.kind.children:
            await self._close_children(collection, history_id, now)
        return True

    async def open_children(
        self, collection: ChildCollection, history_id: int
    ) -> list[dict[str, Any]]:
        model = collection.history_model
        result = await self.session.execute(
            select(*(getattr(model, name) for name in collection.fields))
            .where(model.history_id == history_id, model.valid_to.is_(None))
            .order_by(model.id)
        )
        return [dict(row._mapping) for row in result]
