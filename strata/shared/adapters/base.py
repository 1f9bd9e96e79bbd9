from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from types import TracebackType
from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from strata.modules.inventory.domain.records import Record


@dataclass(slots=True)
class RawPage:
    """One page of provider items plus the token of the next page (None when done)."""

    items: list[Any] = field(default_factory=list)
    next_token: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_token is not None


class BaseResourceAdapter(ABC):
    """
    Abstract base class for provider inventory adapters.

    Standardizes the interface for:
    - Paginated listing of one resource kind within a scope
    - Conversion of raw provider items to Records
    - Entity key derivation

    Adapters are async context managers: whatever client they need is created
    on enter and released on exit, so each sync attempt owns its connections.
    """

    provider: str = "default"

    async def open(self) -> None:
        """Acquire clients. No-op by default."""

    async def aclose(self) -> None:
        """Release clients. No-op by default."""

    async def __aenter__(self) -> "BaseResourceAdapter":
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    @abstractmethod
    async def fetch(self, scope: str, page_token: Optional[str] = None) -> RawPage:
        """Fetch one page of raw items for a scope."""
        raise NotImplementedError()

    @abstractmethod
    def convert(self, raw: Any, scope: str, collected_at: datetime) -> "Record":
        """Map one raw item to a Record stamped with the pass's collected_at."""
        raise NotImplementedError()

    def key(self, record: "Record") -> str:
        """Entity key of a converted record, unique within (kind, scope)."""
        return record.resource_id


# Builds a fresh adapter for one sync attempt of a scope.
AdapterFactory = Callable[[str], BaseResourceAdapter]
