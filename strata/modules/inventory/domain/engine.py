"""
Bitemporal sync engine.

One engine instance syncs one resource kind. A pass fetches every page of a
scope, converts the items, and then applies them in a single transaction:

    load -> diff -> touch (unchanged) | upsert + ledger open/supersede

Fetch and convert finish before the transaction opens, so no remote call is
awaited while database locks are held. Any failure before commit, including
cancellation, rolls the whole batch back.
"""

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from strata.modules.inventory.domain.diff import diff_children, fields_changed, diff_record
from strata.modules.inventory.domain.kinds import ResourceKind
from strata.modules.inventory.domain.ledger import HistoryLedger
from strata.modules.inventory.domain.records import Record, SyncResult
from strata.modules.inventory.domain.store import SnapshotStore
from strata.shared.adapters.base import BaseResourceAdapter
from strata.shared.adapters.rate_limiter import RateLimiter
from strata.shared.core.exceptions import (
    ConversionError,
    LedgerIntegrityError,
    PersistenceError,
    ReconciliationError,
    StrataException,
    TransportError,
)
from strata.shared.core.ops_metrics import (
    LEDGER_INTEGRITY_FAULTS_TOTAL,
    RECONCILE_STALE_CLOSED_TOTAL,
    SYNC_ITEMS_TOTAL,
    SYNC_PAGES_FETCHED,
    SYNC_PASS_DURATION,
)

logger = structlog.get_logger()

Heartbeat = Callable[[dict[str, Any]], Awaitable[None] | None]
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    def __init__(
        self,
        kind: ResourceKind,
        adapter: BaseResourceAdapter,
        session_maker: async_sessionmaker[AsyncSession],
        rate_limiter: Optional[RateLimiter] = None,
        clock: Clock = utcnow,
        max_pages: Optional[int] = None,
        apply_heartbeat_every: int = 100,
    ):
        self.kind = kind
        self.adapter = adapter
        self.session_maker = session_maker
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.max_pages = max_pages
        self.apply_heartbeat_every = max(apply_heartbeat_every, 1)

    async def _beat(self, heartbeat: Optional[Heartbeat], **progress: Any) -> None:
        if heartbeat is None:
            return
        result = heartbeat(progress)
        if result is not None:
            await result

    async def _fetch_all(
        self, scope: str, heartbeat: Optional[Heartbeat]
    ) -> list[Any]:
        items: list[Any] = []
        page_token: Optional[str] = None
        pages = 0
        while True:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            try:
                page = await self.adapter.fetch(scope, page_token)
            except TransportError:
                raise
            except StrataException as e:
                raise TransportError(e.message, details=e.details) from e
            except Exception as e:
                raise TransportError(
                    f"Fetching {self.kind.name} for {scope} failed: {e}",
                    details={"kind": self.kind.name, "scope": scope, "page": pages},
                ) from e

            pages += 1
            items.extend(page.items)
            SYNC_PAGES_FETCHED.labels(kind=self.kind.name).inc()
            await self._beat(heartbeat, stage="fetch", pages=pages, items=len(items))

            if not page.has_more:
                return items
            if self.max_pages is not None and pages >= self.max_pages:
                # A partial fetch must not reach reconcile, which would close the unseen entities.
                logger.warning(
                    "inventory_fetch_page_cap_reached",
                    kind=self.kind.name,
                    scope=scope,
                    pages=pages,
                )
                raise TransportError(
                    f"Fetching {self.kind.name} for {scope} stopped at the {self.max_pages} page cap",
                    code="page_cap_reached",
                    details={"kind": self.kind.name, "scope": scope, "pages": pages},
                )
            page_token = page.next_token

    def _convert_all(
        self, raw_items: list[Any], scope: str, collected_at: datetime
    ) -> list[Record]:
        records: list[Record] = []
        seen: set[str] = set()
        for index, raw in enumerate(raw_items):
            try:
                record = self.adapter.convert(raw, scope, collected_at)
                key = self.adapter.key(record)
            except ConversionError:
                raise
            except Exception as e:
                raise ConversionError(
                    f"Converting {self.kind.name} item {index} failed: {e}",
                    details={"kind": self.kind.name, "scope": scope, "index": index},
                ) from e

            if record.scope != scope:
                raise ConversionError(
                    f"Converted {self.kind.name} item belongs to scope {record.scope}, not {scope}",
                    details={"kind": self.kind.name, "scope": scope, "index": index},
                )
            if not key:
                raise ConversionError(
                    f"Converted {self.kind.name} item {index} has no entity key",
                    details={"kind": self.kind.name, "scope": scope, "index": index},
                )
            if key in seen:
                raise ConversionError(
                    f"Duplicate {self.kind.name} entity key {key} in one pass",
                    details={"kind": self.kind.name, "scope": scope, "resource_id": key},
                )
            seen.add(key)
            record.resource_id = key
            record.collected_at = collected_at
            records.append(record)
        return records

    async def _apply(
        self,
        session: AsyncSession,
        records: list[Record],
        now: datetime,
        heartbeat: Optional[Heartbeat] = None,
    ) -> dict[str, int]:
        store = SnapshotStore(session, self.kind)
        ledger = HistoryLedger(session, self.kind)
        outcomes = {"new": 0, "changed": 0, "unchanged": 0}

        for applied, record in enumerate(records, start=1):
            if applied % self.apply_heartbeat_every == 0:
                await self._beat(heartbeat, stage="apply", applied=applied, items=len(records))
            existing = await store.load(record.scope, record.resource_id)
            diff = diff_record(self.kind, existing, record)
            if not diff.has_any_change():
                await store.touch(record)
                outcomes["unchanged"] += 1
                continue

            await store.upsert(record, exists=existing is not None)
            if diff.is_new:
                await ledger.open(record, now)
                outcomes["new"] += 1
            else:
                await ledger.supersede(record, diff, now)
                outcomes["changed"] += 1
        return outcomes

    async def run(self, scope: str, heartbeat: Optional[Heartbeat] = None) -> SyncResult:
        """
        Synchronize one scope of this kind.

        Returns the number of items processed and the pass's collected_at,
        which is also the valid-time boundary of every interval it opens or
        closes.
        """
        started = time.perf_counter()
        collected_at = self.clock()
        log = logger.bind(kind=self.kind.name, scope=scope)
        log.info("inventory_sync_started", collected_at=collected_at.isoformat())

        raw_items = await self._fetch_all(scope, heartbeat)
        records = self._convert_all(raw_items, scope, collected_at)
        outcomes = {"new": 0, "changed": 0, "unchanged": 0}

        if records:
            try:
                async with self.session_maker() as session:
                    async with session.begin():
                        outcomes = await self._apply(
                            session, records, collected_at, heartbeat
                        )
            except LedgerIntegrityError as e:
                LEDGER_INTEGRITY_FAULTS_TOTAL.labels(kind=self.kind.name).inc()
                log.critical("inventory_ledger_integrity_fault", error=e.message, **e.details)
                raise
            except PersistenceError:
                raise
            except SQLAlchemyError as e:
                log.error("inventory_sync_persist_failed", error=str(e))
                raise PersistenceError(
                    f"Persisting {self.kind.name} for {scope} failed: {e}",
                    details={"kind": self.kind.name, "scope": scope},
                ) from e
            await self._beat(heartbeat, stage="commit", items=len(records))

        duration = time.perf_counter() - started
        for outcome, count in outcomes.items():
            if count:
                SYNC_ITEMS_TOTAL.labels(kind=self.kind.name, outcome=outcome).inc(count)
        SYNC_PASS_DURATION.labels(kind=self.kind.name).observe(duration)
        log.info("inventory_sync_completed", count=len(records), **outcomes)

        return SyncResult(
            kind=self.kind.name,
            scope=scope,
            count=len(records),
            collected_at=collected_at,
            duration_ms=int(duration * 1000),
            **outcomes,
        )

    async def reconcile(self, scope: str, collected_at: datetime) -> int:
        """
        Close and remove every entity of the scope not seen by the pass that
        stamped `collected_at`. Returns how many entities were closed.
        """
        if collected_at > self.clock():
            raise ReconciliationError(
                "Refusing to reconcile against a collected_at in the future",
                details={
                    "kind": self.kind.name,
                    "scope": scope,
                    "collected_at": collected_at.isoformat(),
                },
            )

        closed = 0
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    store = SnapshotStore(session, self.kind)
                    ledger = HistoryLedger(session, self.kind)
                    for resource_id in await store.list_stale(scope, collected_at):
                        await ledger.close(scope, resource_id, collected_at)
                        await store.delete(scope, resource_id)
                        closed += 1
        except StrataException as e:
            if isinstance(e, LedgerIntegrityError):
                LEDGER_INTEGRITY_FAULTS_TOTAL.labels(kind=self.kind.name).inc()
            raise ReconciliationError(
                f"Reconciling {self.kind.name} for {scope} failed: {e.message}",
                details={"kind": self.kind.name, "scope": scope, "cause": e.code},
            ) from e
        except SQLAlchemyError as e:
            raise ReconciliationError(
                f"Reconciling {self.kind.name} for {scope} failed: {e}",
                details={"kind": self.kind.name, "scope": scope},
            ) from e

        if closed:
            RECONCILE_STALE_CLOSED_TOTAL.labels(kind=self.kind.name).inc(closed)
            logger.info(
                "inventory_stale_reconciled",
                kind=self.kind.name,
                scope=scope,
                closed=closed,
            )
        return closed

    async def verify_integrity(self, scope: str) -> list[str]:
        return await verify_integrity(self.session_maker, self.kind, scope)


async def verify_integrity(
    session_maker: async_sessionmaker[AsyncSession], kind: ResourceKind, scope: str
) -> list[str]:
    """
    Check the ledger of a scope against its snapshots.

    Every snapshot must have exactly one open history row whose fields
    and open children equal the snapshot, and no open history row may
    exist without a snapshot.
    """
    violations: list[str] = []
    history = kind.history_model
    async with session_maker() as session:
        store = SnapshotStore(session, kind)
        ledger = HistoryLedger(session, kind)
        snapshot_keys = await store.list_keys(scope)

        for resource_id in snapshot_keys:
            open_rows = await ledger.open_count(scope, resource_id)
            if open_rows != 1:
                violations.append(f"{resource_id}: {open_rows} open history records")
                continue
            snapshot = await store.load(scope, resource_id)
            current = await ledger.current(scope, resource_id)
            if snapshot is None or current is None:
                continue
            current_fields = {name: getattr(current, name) for name in kind.fields}
            if fields_changed(kind.fields, snapshot.fields, current_fields):
                violations.append(f"{resource_id}: open history differs from snapshot")
            for collection in kind.children:
                open_children = await ledger.open_children(collection, current.history_id)
                if diff_children(
                    collection, snapshot.children.get(collection.name, []), open_children
                ).changed:
                    violations.append(
                        f"{resource_id}: open {collection.name} differ from snapshot"
                    )

        result = await session.execute(
            select(history.resource_id)
            .where(history.scope == scope, history.valid_to.is_(None))
            .distinct()
        )
        orphaned = sorted(set(result.scalars().all()) - set(snapshot_keys))
        violations.extend(f"{resource_id}: open history without snapshot" for resource_id in orphaned)
    return violations
