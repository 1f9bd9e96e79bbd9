"""
Paginated JSON REST adapter base.

Concrete adapters set `list_path` and implement `convert`; pagination, error
mapping and client lifetime live here.
"""

import json
from typing import Any, Optional

import httpx
import structlog

from strata.shared.adapters.base import BaseResourceAdapter, RawPage
from strata.shared.core.config import get_settings
from strata.shared.core.exceptions import TransportError

logger = structlog.get_logger()


class JsonApiAdapter(BaseResourceAdapter):
    """
    Lists a JSON collection endpoint page by page.

    The response body is an object holding the page items under `items_field`
    and the next page token under `next_token_field` (absent or empty when
    the listing is complete).
    """

    list_path: str = ""
    items_field: str = "items"
    next_token_field: str = "next_page_token"
    page_token_param: str = "page_token"
    scope_param: Optional[str] = None

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout if timeout is not None else get_settings().HTTP_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = client is None

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url, headers=self.headers, timeout=self.timeout
            )
            self._owns_client = True

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise TransportError(
                f"{type(self).__name__} used outside of its context",
                details={"provider": self.provider},
            )
        return self._client

    def build_path(self, scope: str) -> str:
        return self.list_path.format(scope=scope)

    def build_params(self, scope: str, page_token: Optional[str]) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.scope_param:
            params[self.scope_param] = scope
        if page_token:
            params[self.page_token_param] = page_token
        return params

    async def fetch(self, scope: str, page_token: Optional[str] = None) -> RawPage:
        path = self.build_path(scope)
        try:
            response = await self.client.get(path, params=self.build_params(scope, page_token))
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "provider_fetch_http_error",
                provider=self.provider,
                path=path,
                status_code=e.response.status_code,
            )
            raise TransportError(
                f"{self.provider} returned HTTP {e.response.status_code} for {path}",
                details={"provider": self.provider, "status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "provider_fetch_failed", provider=self.provider, path=path, error=str(e)
            )
            raise TransportError(
                f"{self.provider} request failed: {e}",
                details={"provider": self.provider},
            ) from e
        except json.JSONDecodeError as e:
            raise TransportError(
                f"{self.provider} returned a non-JSON body for {path}",
                details={"provider": self.provider},
            ) from e

        if not isinstance(body, dict):
            raise TransportError(
                f"{self.provider} returned an unexpected payload for {path}",
                details={"provider": self.provider},
            )
        items = body.get(self.items_field) or []
        next_token = body.get(self.next_token_field) or None
        return RawPage(items=list(items), next_token=next_token)
