from typing import Optional

from sqlalchemy import Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from strata.models.inventory import HistoryMixin, SnapshotMixin
from strata.shared.db.base import Base


class DnsDomain(SnapshotMixin, Base):
    """
    Current state of a DNS domain hosted by DigitalOcean.
    The entity key is the domain name itself.
    """

    __tablename__ = "do_domains"

    ttl: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    zone_file: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class DnsDomainHistory(HistoryMixin, Base):
    __tablename__ = "do_domains_history"

    ttl: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    zone_file: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
