"""
Resource kind descriptors.

A ResourceKind tells the generic engine which tables hold a kind's snapshot and
history, which columns are domain fields, and which nested collections are
versioned alongside it. Domain columns are read from the mapped tables, so a
kind is declared once in `strata/models` and registered here.
"""

from dataclasses import dataclass, field
from typing import Any

from strata.models.compute import (
    ComputeSnapshot,
    ComputeSnapshotHistory,
    ComputeSnapshotLabel,
    ComputeSnapshotLabelHistory,
    ComputeSnapshotLicense,
    ComputeSnapshotLicenseHistory,
)
from strata.models.dns import DnsDomain, DnsDomainHistory
from strata.models.inventory import (
    HISTORY_BOOKKEEPING_COLUMNS,
    HISTORY_CHILD_BOOKKEEPING_COLUMNS,
    SNAPSHOT_BOOKKEEPING_COLUMNS,
    SNAPSHOT_CHILD_BOOKKEEPING_COLUMNS,
)
from strata.shared.core.exceptions import ConfigurationError, ResourceNotFoundError


def _domain_columns(model: Any, bookkeeping: frozenset[str]) -> tuple[str, ...]:
    return tuple(
        column.key
        for column in model.__table__.columns
        if column.key not in bookkeeping
    )


@dataclass(frozen=True)
class ChildCollection:
    """A nested, unordered, keyed collection (labels, licenses, policy bindings)."""

    name: str
    snapshot_model: Any
    history_model: Any
    key_fields: tuple[str, ...]
    value_fields: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        columns = _domain_columns(self.snapshot_model, SNAPSHOT_CHILD_BOOKKEEPING_COLUMNS)
        history_columns = _domain_columns(self.history_model, HISTORY_CHILD_BOOKKEEPING_COLUMNS)
        if set(columns) != set(history_columns):
            raise ConfigurationError(
                f"Child collection {self.name} has mismatched snapshot/history columns",
                details={"snapshot": columns, "history": history_columns},
            )
        missing = [k for k in self.key_fields if k not in columns]
        if missing:
            raise ConfigurationError(
                f"Child collection {self.name} key fields not mapped: {missing}"
            )
        if not self.value_fields:
            object.__setattr__(
                self,
                "value_fields",
                tuple(c for c in columns if c not in self.key_fields),
            )

    @property
    def fields(self) -> tuple[str, ...]:
        return self.key_fields + self.value_fields


@dataclass(frozen=True)
class ResourceKind:
    name: str
    provider: str
    snapshot_model: Any
    history_model: Any
    children: tuple[ChildCollection, ...] = ()
    fields: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        columns = _domain_columns(self.snapshot_model, SNAPSHOT_BOOKKEEPING_COLUMNS)
        history_columns = _domain_columns(self.history_model, HISTORY_BOOKKEEPING_COLUMNS)
        if set(columns) != set(history_columns):
            raise ConfigurationError(
                f"Resource kind {self.name} has mismatched snapshot/history columns",
                details={"snapshot": columns, "history": history_columns},
            )
        if not self.fields:
            object.__setattr__(self, "fields", columns)

    def child(self, name: str) -> ChildCollection:
        for collection in self.children:
            if collection.name == name:
                return collection
        raise KeyError(name)


_KINDS: dict[str, ResourceKind] = {}


def register_kind(kind: ResourceKind) -> ResourceKind:
    existing = _KINDS.get(kind.name)
    if existing is not None and existing != kind:
        raise ConfigurationError(f"Resource kind {kind.name} is already registered")
    _KINDS[kind.name] = kind
    return kind


def unregister_kind(name: str) -> None:
    _KINDS.pop(name, None)


def get_kind(name: str) -> ResourceKind:
    try:
        return _KINDS[name]
    except KeyError:
        raise ResourceNotFoundError(
            f"Unknown resource kind: {name}", details={"kind": name}
        ) from None


def kinds_for_provider(provider: str) -> list[ResourceKind]:
    return [kind for kind in _KINDS.values() if kind.provider == provider]


GCP_COMPUTE_SNAPSHOT = register_kind(
    ResourceKind(
        name="gcp_compute_snapshot",
        provider="gcp",
        snapshot_model=ComputeSnapshot,
        history_model=ComputeSnapshotHistory,
        children=(
            ChildCollection(
                name="labels",
                snapshot_model=ComputeSnapshotLabel,
                history_model=ComputeSnapshotLabelHistory,
                key_fields=("key",),
            ),
            ChildCollection(
                name="licenses",
                snapshot_model=ComputeSnapshotLicense,
                history_model=ComputeSnapshotLicenseHistory,
                key_fields=("license",),
            ),
        ),
    )
)

DO_DOMAIN = register_kind(
    ResourceKind(
        name="do_domain",
        provider="digitalocean",
        snapshot_model=DnsDomain,
        history_model=DnsDomainHistory,
    )
)
