"""Shared async HTTP client base for the provider connectors.

Each concrete client (Business Central, Dataverse, Graph) owns:
- an aiohttp ``ClientSession`` (``connect()`` / ``disconnect()`` or ``async with``)
- a ``ClientCredentialsAuth`` token provider
- an exception family used for non-2xx responses

Requests go through ``fetch_with_retry``; a 401 triggers one token refresh
before the error is raised.
"""

import logging
from typing import Any, Dict, List, Optional, Type

import aiohttp

from connectors.auth import ClientCredentialsAuth
from connectors.errors import ConnectorApiError
from core.config import HttpRetryConfig
from core.http import HttpResponse, fetch_with_retry, sanitize_url

logger = logging.getLogger(__name__)


class ApiClient:
    """Authenticated JSON client bound to one API root.

    Usage:
        async with DataverseClient(config) as client:
            rows = await client.list("msdyn_projects")
    """

    error_cls: Type[ConnectorApiError] = ConnectorApiError

    def __init__(
        self,
        auth: ClientCredentialsAuth,
        base_url: str,
        retry: Optional[HttpRetryConfig] = None,
        timeout_seconds: float = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.retry = retry
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Open the HTTP session if one is not already open."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True

    async def disconnect(self) -> None:
        """Close the HTTP session if this client opened it."""
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.connect()
        return self._session

    # =========================================================================
    # Requests
    # =========================================================================

    def build_url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def request(
        self,
        method: str,
        path_or_url: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> HttpResponse:
        """Send an authenticated request and return the fully-read response.

        Raises:
            ConnectorApiError: (provider subclass) for any non-2xx response
        """
        session = await self._get_session()
        url = self.build_url(path_or_url)

        for attempt in range(2):
            request_headers = {
                "Authorization": await self.auth.get_authorization_header(session),
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
            if headers:
                request_headers.update(headers)
            response = await fetch_with_retry(
                session,
                method,
                url,
                headers=request_headers,
                params=params,
                json_body=json_body,
                retry=self.retry,
                timeout_seconds=self.timeout_seconds,
            )
            if response.status == 401 and attempt == 0:
                logger.warning(f"Got 401 for {method} {sanitize_url(url)}, refreshing token")
                self.auth.invalidate()
                continue
            break

        if not response.ok:
            raise self.error_cls.from_response(method, url, response)
        return response

    async def request_json(self, method: str, path_or_url: str, **kwargs) -> Dict[str, Any]:
        """Send a request and decode the JSON body (``{}`` for empty bodies)."""
        response = await self.request(method, path_or_url, **kwargs)
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def list_all(
        self,
        path_or_url: str,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read every page of an OData collection by following ``@odata.nextLink``."""
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = path_or_url
        next_params = params
        pages = 0
        while next_url:
            data = await self.request_json("GET", next_url, params=next_params, headers=headers)
            value = data.get("value")
            if isinstance(value, list):
                items.extend(value)
            pages += 1
            next_url = data.get("@odata.nextLink")
            next_params = None
            if max_pages is not None and pages >= max_pages:
                if next_url:
                    logger.warning(
                        f"Page limit reached for {sanitize_url(self.build_url(path_or_url))} "
                        f"after {pages} pages"
                    )
                break
        return items


def escape_odata_string(value: str) -> str:
    """Escape a literal for use inside single quotes in an OData filter."""
    return str(value).replace("'", "''")
