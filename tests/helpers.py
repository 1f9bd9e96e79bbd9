"""Shared fakes for inventory sync tests."""

from datetime import datetime, timedelta
from typing import Any, Optional

from strata.modules.inventory.domain.kinds import DO_DOMAIN, GCP_COMPUTE_SNAPSHOT
from strata.modules.inventory.domain.records import Record, canonical_json
from strata.shared.adapters.base import BaseResourceAdapter, RawPage


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 60) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def snapshot_item(name: str, **overrides: Any) -> dict[str, Any]:
    item: dict[str, Any] = {
        "name": name,
        "status": "READY",
        "disk_size_gb": 10,
        "storage_bytes": 1024,
        "auto_created": False,
        "labels": {"env": "prod"},
        "licenses": ["projects/debian-cloud/global/licenses/debian-12"],
        "storage_locations": ["us"],
    }
    item.update(overrides)
    return item


class StaticAdapter(BaseResourceAdapter):
    """Serves pre-built pages and records how it was used."""

    provider = "gcp"

    def __init__(self, pages: Optional[list[list[Any]]] = None):
        self.pages = pages if pages is not None else [[]]
        self.fetch_calls: list[Optional[str]] = []
        self.opened = 0
        self.closed = 0

    def set_items(self, *pages: list[Any]) -> None:
        self.pages = list(pages) or [[]]

    async def open(self) -> None:
        self.opened += 1

    async def aclose(self) -> None:
        self.closed += 1

    async def fetch(self, scope: str, page_token: Optional[str] = None) -> RawPage:
        self.fetch_calls.append(page_token)
        index = int(page_token) if page_token else 0
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return RawPage(items=list(self.pages[index]), next_token=next_token)

    def convert(self, raw: Any, scope: str, collected_at: datetime) -> Record:
        return Record(
            resource_id=raw["name"],
            scope=raw.get("scope", scope),
            collected_at=collected_at,
            fields={
                "name": raw["name"],
                "description": raw.get("description"),
                "status": raw.get("status"),
                "disk_size_gb": raw.get("disk_size_gb"),
                "storage_bytes": raw.get("storage_bytes"),
                "snapshot_type": raw.get("snapshot_type"),
                "architecture": raw.get("architecture"),
                "source_disk": raw.get("source_disk"),
                "auto_created": bool(raw.get("auto_created", False)),
                "label_fingerprint": raw.get("label_fingerprint"),
                "creation_timestamp": raw.get("creation_timestamp"),
                "storage_locations_json": canonical_json(raw.get("storage_locations")),
                "encryption_key_json": canonical_json(raw.get("encryption_key")),
            },
            children={
                "labels": [
                    {"key": k, "value": v} for k, v in sorted(raw.get("labels", {}).items())
                ],
                "licenses": [{"license": lic} for lic in raw.get("licenses", [])],
            },
        )


class DomainAdapter(StaticAdapter):
    provider = "digitalocean"

    def convert(self, raw: Any, scope: str, collected_at: datetime) -> Record:
        return Record(
            resource_id=raw["name"],
            scope=scope,
            collected_at=collected_at,
            fields={"ttl": raw.get("ttl"), "zone_file": raw.get("zone_file")},
        )


SNAPSHOT_KIND = GCP_COMPUTE_SNAPSHOT
DOMAIN_KIND = DO_DOMAIN
