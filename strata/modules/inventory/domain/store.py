"""
Current-state persistence for one resource kind.

The store never commits: callers own the transaction (`async with
session.begin()`), so a pass that fails anywhere leaves no partial writes.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from strata.modules.inventory.domain.kinds import ChildCollection, ResourceKind
from strata.modules.inventory.domain.records import Record


class SnapshotStore:
    def __init__(self, session: AsyncSession, kind: ResourceKind):
        self.session = session
        self.kind = kind
        self.model = kind.snapshot_model

    def _owner(self, model: Any, scope: str, resource_id: str) -> Any:
        return and_(model.scope == scope, model.resource_id == resource_id)

    async def _load_children(
        self, collection: ChildCollection, scope: str, resource_id: str
    ) -> list[dict[str, Any]]:
        model = collection.snapshot_model
        result = await self.session.execute(
            select(*(getattr(model, name) for name in collection.fields))
            .where(self._owner(model, scope, resource_id))
            .order_by(model.id)
        )
        return [dict(row._mapping) for row in result]

    async def load(self, scope: str, resource_id: str) -> Optional[Record]:
        result = await self.session.execute(
            select(self.model)
            .where(self._owner(self.model, scope, resource_id))
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None

        record = Record(
            resource_id=row.resource_id,
            scope=row.scope,
            collected_at=row.collected_at,
            fields={name: getattr(row, name) for name in self.kind.fields},
            first_collected_at=row.first_collected_at,
        )
        for collection in self.kind.children:
            record.children[collection.name] = await self._load_children(
                collection, scope, resource_id
            )
        return record

    async def touch(self, record: Record) -> None:
        """Advance collected_at on an unchanged snapshot."""
        await self.session.execute(
            update(self.model)
            .where(self._owner(self.model, record.scope, record.resource_id))
            .values(collected_at=record.collected_at)
        )

    async def upsert(self, record: Record, exists: bool) -> None:
        """
        Write the snapshot row and replace its child rows wholesale.

        first_collected_at is set on insert only and never touched again.
        """
        values = {name: record.fields.get(name) for name in self.kind.fields}
        if exists:
            await self.session.execute(
                update(self.model)
                .where(self._owner(self.model, record.scope, record.resource_id))
                .values(collected_at=record.collected_at, **values)
            )
        else:
            await self.session.execute(
                insert(self.model).values(
                    scope=record.scope,
                    resource_id=record.resource_id,
                    collected_at=record.collected_at,
                    first_collected_at=record.collected_at,
                    **values,
                )
            )

        for collection in self.kind.children:
            await self._replace_children(collection, record)

    async def _replace_children(self, collection: ChildCollection, record: Record) -> None:
        model = collection.snapshot_model
        await self.session.execute(
            delete(model).where(self._owner(model, record.scope, record.resource_id))
        )
        rows = [
            {
                "scope": record.scope,
                "resource_id": record.resource_id,
                **{name: row.get(name) for name in collection.fields},
            }
            for row in record.children.get(collection.name, [])
        ]
        if rows:
            await self.session.execute(insert(model), rows)

    async def delete(self, scope: str, resource_id: str) -> None:
        for collection in self.kind.children:
            model = collection.snapshot_model
            await self.session.execute(
                delete(model).where(self._owner(model, scope, resource_id))
            )
        await self.session.execute(
            delete(self.model).where(self._owner(self.model, scope, resource_id))
        )

    async def list_stale(self, scope: str, collected_at: datetime) -> list[str]:
        """Entities not observed by the pass that stamped `collected_at`."""
        result = await self.session.execute(
            select(self.model.resource_id)
            .where(self.model.scope == scope, self.model.collected_at < collected_at)
            .order_by(self.model.resource_id)
        )
        return list(result.scalars().all())

    async def list_keys(self, scope: str) -> list[str]:
        result = await self.session.execute(
            select(self.model.resource_id)
            .where(self.model.scope == scope)
            .order_by(self.model.resource_id)
        )
        return list(result.scalars().all())
