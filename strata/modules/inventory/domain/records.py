import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


def canonical_json(value: Any) -> Optional[bytes]:
    """
    Serialize an embedded provider payload to canonical JSON bytes.

    Key order and whitespace never produce a diff; only content does.
    """
    if value is None:
        return None
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    ).encode("utf-8")


@dataclass(slots=True)
class Record:
    """
    Provider-neutral shape of one resource as seen in one pass.

    `fields` holds the kind's domain columns; `children` maps a child
    collection name to its rows (each a dict of that collection's columns).
    `first_collected_at` is only set on records loaded from the store.
    """

    resource_id: str
    scope: str
    collected_at: datetime
    fields: dict[str, Any] = field(default_factory=dict)
    children: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    first_collected_at: Optional[datetime] = None


@dataclass(slots=True)
class SyncResult:
    kind: str
    scope: str
    count: int
    collected_at: datetime
    duration_ms: int
    new: int = 0
    changed: int = 0
    unchanged: int = 0
