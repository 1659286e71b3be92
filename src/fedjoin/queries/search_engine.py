"""
Query executor for the search cluster.

The result query is a JSON search body template. It is posted to
``{url}/{index}/_search`` and every hit becomes one binding holding the
document source plus its ``_id``. No automatic retries.
"""

import json
from typing import Any, Dict, List, Optional

import httpx

from fedjoin.core.config import settings
from fedjoin.core.errors import BackendConnectionError, ExecutionError
from fedjoin.core.logging import log_performance
from fedjoin.queries.base import BaseQuery


class SearchEngineQuery(BaseQuery):
    """
    Runs search requests over HTTP.
    Supports basic and API key authentication.
    """

    def __init__(self, *args: Any, client: Optional[httpx.AsyncClient] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.client = client
        self._owns_client = client is None
        self.base_url = self.datasource.get("url") or settings.search_url
        self.index = self.datasource.get("index", "_all")

    @property
    def connection_identity(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.index}"

    def _build_client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        auth = None

        api_key = self.datasource.get("api_key")
        username = self.datasource.get("username") or settings.search_username
        password = self.datasource.get("password") or settings.search_password
        if api_key:
            headers["Authorization"] = f"ApiKey {api_key}"
        elif username and password:
            auth = httpx.BasicAuth(username, password)

        timeout = float(self.datasource.get("timeout", settings.request_timeout_seconds))
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            auth=auth,
            timeout=httpx.Timeout(timeout),
        )

    async def _init(self) -> None:
        """Open the HTTP client and ping the cluster root."""
        if self.client is None:
            self.client = self._build_client()
        self.logger.info("Connecting to search cluster", datasource_id=self.datasource_id, url=self.base_url)
        try:
            response = await self.client.get("/")
        except httpx.HTTPError as e:
            raise BackendConnectionError(self.datasource_id, f"Unable to connect: {e}", cause=e) from e
        if response.status_code in (401, 403):
            raise BackendConnectionError(
                self.datasource_id, f"Credentials rejected: HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise BackendConnectionError(
                self.datasource_id, f"Failed to connect: HTTP {response.status_code}"
            )

    async def close(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None
        await super().close()

    @log_performance("Search query execution")
    async def execute_raw(self, query: str) -> Dict[str, Any]:
        if self.client is None:
            raise BackendConnectionError(self.datasource_id, "Not connected")

        try:
            body = json.loads(query) if query.strip() else {}
        except json.JSONDecodeError as e:
            raise ExecutionError(self.datasource_id, f"Invalid search body: {e}", cause=e) from e

        try:
            response = await self.client.post(f"/{self.index}/_search", json=body)
        except httpx.TransportError as e:
            raise BackendConnectionError(self.datasource_id, str(e), cause=e) from e

        if response.status_code in (401, 403):
            raise BackendConnectionError(
                self.datasource_id, f"Credentials rejected: HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise ExecutionError(
                self.datasource_id,
                f"Search failed: HTTP {response.status_code} {response.text[:200]}",
            )

        return {"result": self.hits_to_rows(response.json())}

    @staticmethod
    def hits_to_rows(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Flatten search hits into bindings."""
        rows = []
        for hit in payload.get("hits", {}).get("hits", []):
            row = dict(hit.get("_source") or {})
            row["_id"] = hit.get("_id")
            rows.append(row)
        return rows
