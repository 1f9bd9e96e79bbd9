from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from strata.models.inventory import (
    HistoryChildMixin,
    HistoryMixin,
    SnapshotChildMixin,
    SnapshotMixin,
)
from strata.shared.db.base import Base


class _ComputeSnapshotFields:
    """Domain columns shared by the current-state and history tables."""

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    disk_size_gb: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    storage_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    snapshot_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    architecture: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source_disk: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    auto_created: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    label_fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    creation_timestamp: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # canonical JSON payloads, compared byte for byte
    storage_locations_json: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary, nullable=True
    )
    encryption_key_json: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary, nullable=True
    )


class ComputeSnapshot(_ComputeSnapshotFields, SnapshotMixin, Base):
    """Current state of a GCP Compute Engine disk snapshot."""

    __tablename__ = "gcp_compute_snapshots"


class ComputeSnapshotHistory(_ComputeSnapshotFields, HistoryMixin, Base):
    __tablename__ = "gcp_compute_snapshots_history"


class ComputeSnapshotLabel(SnapshotChildMixin, Base):
    __tablename__ = "gcp_compute_snapshot_labels"
    __table_args__ = (
        ForeignKeyConstraint(
            ["scope", "resource_id"],
            ["gcp_compute_snapshots.scope", "gcp_compute_snapshots.resource_id"],
            ondelete="CASCADE",
        ),
        Index("ix_gcp_compute_snapshot_labels_owner", "scope", "resource_id"),
    )

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class ComputeSnapshotLicense(SnapshotChildMixin, Base):
    __tablename__ = "gcp_compute_snapshot_licenses"
    __table_args__ = (
        ForeignKeyConstraint(
            ["scope", "resource_id"],
            ["gcp_compute_snapshots.scope", "gcp_compute_snapshots.resource_id"],
            ondelete="CASCADE",
        ),
        Index("ix_gcp_compute_snapshot_licenses_owner", "scope", "resource_id"),
    )

    license: Mapped[str] = mapped_column(String(1024), nullable=False)


class ComputeSnapshotLabelHistory(HistoryChildMixin, Base):
    __tablename__ = "gcp_compute_snapshot_labels_history"

    history_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("gcp_compute_snapshots_history.history_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class ComputeSnapshotLicenseHistory(HistoryChildMixin, Base):
    __tablename__ = "gcp_compute_snapshot_licenses_history"

    history_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("gcp_compute_snapshots_history.history_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    license: Mapped[str] = mapped_column(String(1024), nullable=False)
