"""
Column sets shared by every tracked resource kind.

Each kind owns four table shapes:

* snapshot            one current-state row per (scope, resource_id)
* snapshot child      rows of a nested collection (labels, licenses, ...),
                      replaced wholesale on every snapshot upsert
* history             one row per version, valid over [valid_from, valid_to);
                      valid_to IS NULL marks the live version
* history child       versions of a nested collection, keyed to the owning
                      history row's surrogate id

Concrete kinds (see compute.py, dns.py) combine these mixins with their own
domain columns; the sync engine discovers the domain columns from the table.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from strata.shared.db.base import UTCDateTime

SNAPSHOT_BOOKKEEPING_COLUMNS = frozenset(
    {"scope", "resource_id", "collected_at", "first_collected_at"}
)
HISTORY_BOOKKEEPING_COLUMNS = frozenset(
    {
        "history_id",
        "scope",
        "resource_id",
        "valid_from",
        "valid_to",
        "collected_at",
        "first_collected_at",
    }
)
SNAPSHOT_CHILD_BOOKKEEPING_COLUMNS = frozenset({"id", "scope", "resource_id"})
HISTORY_CHILD_BOOKKEEPING_COLUMNS = frozenset(
    {"id", "history_id", "valid_from", "valid_to"}
)


class SnapshotMixin:
    scope: Mapped[str] = mapped_column(String(255), primary_key=True)
    resource_id: Mapped[str] = mapped_column(String(512), primary_key=True)
    collected_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    first_collected_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    @declared_attr.directive
    def __table_args__(cls) -> Any:
        return (Index(f"ix_{cls.__tablename__}_scope_collected", "scope", "collected_at"),)


class HistoryMixin:
    history_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(512), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    valid_to: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    collected_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    first_collected_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    @declared_attr.directive
    def __table_args__(cls) -> Any:
        return (
            Index(f"ix_{cls.__tablename__}_open", "scope", "resource_id", "valid_to"),
        )

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self.resource_id} "
            f"[{self.valid_from}, {self.valid_to})>"
        )


class SnapshotChildMixin:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(512), nullable=False)


class HistoryChildMixin:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    valid_to: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
