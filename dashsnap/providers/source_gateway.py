from __future__ import annotations

import httpx
import structlog

from ..errors import SourceFetchError
from .common import SOURCE_NAMES, convert_wip_rows, extract_rows

log = structlog.get_logger()

SOURCE_PATHS = {
    "wipData": "/wip",
    "ofData": "/of",
    "pctData": "/pct",
    "forecastData": "/forecast",
    "bbbkData": "/bbbk",
    "dailySalesData": "/dailySales",
    "lostSalesData": "/lostSales",
    "otaData": "/ota",
    "materialData": "/material",
    "batchExpiryData": "/batchExpiry",
}

class SourceGateway:
    """HTTP adapter for the ten production data feeds."""

    def __init__(self, base_url: str, timeout: float = 120.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def fetch(self, source: str) -> list:
        path = SOURCE_PATHS.get(source)
        if path is None:
            raise SourceFetchError(source, "unknown source")
        try:
            r = await self._get_client().get(path)
        except httpx.HTTPError as e:
            raise SourceFetchError(source, f"transport error: {e}") from e
        if r.status_code != 200:
            log.warning("source_http_error", source=source, status=r.status_code, body=r.text[:500])
            raise SourceFetchError(source, f"http {r.status_code}", status_code=r.status_code)
        try:
            body = r.json()
        except ValueError as e:
            raise SourceFetchError(source, "invalid json") from e
        rows = extract_rows(body)
        if rows is None:
            raise SourceFetchError(source, "response carries no record array")
        if source == "wipData":
            rows = convert_wip_rows(rows)
        return rows

    def fetchers(self) -> dict:
        def _bind(source: str):
            async def _fetch():
                return await self.fetch(source)
            return _fetch
        return {source: _bind(source) for source in SOURCE_NAMES}
