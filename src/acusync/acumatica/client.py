"""
Async client for the Acumatica contract-based REST API.

Every request carries the cookie of the session manager's current session.
Failure handling, per request:

    401/403        force a new session once and resend; a second rejection
                   raises SessionRejected
    timeout        force a new session once and resend; a second timeout
                   raises RemoteTimeout (not retried further)
    5xx, 429,      TransientRemoteError, retried by the RetryPolicy with
    HTML body      exponential backoff (Acumatica's proxy serves HTML error
                   pages with 200/502 when the app pool recycles)
    404            RemoteRequestError(status_code=404); single-entity lookups
                   turn it into None
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from acusync.acumatica.retry import RetryPolicy
from acusync.acumatica.session import Credentials, SessionManager
from acusync.errors import (
    RemoteRequestError,
    RemoteTimeout,
    SessionRejected,
    TransientRemoteError,
)
from acusync.models.sync import RemoteSession

logger = logging.getLogger(__name__)

# Acumatica answers a GET for a missing key with 500 and this text
_MISSING_ENTITY_MARKER = "No entity satisfies the condition"


class AcumaticaClient:
    """
    Thin async wrapper over the contract API.

    Usage:
        client = AcumaticaClient(credentials, sessions, http)
        payments = await client.list_entities("Payment", filter="...", top=500)
        payment = await client.get_entity("Payment", ["Payment", "001234"], expand=["files"])
    """

    def __init__(
        self,
        credentials: Credentials,
        sessions: SessionManager,
        http: httpx.AsyncClient,
        *,
        api_version: str = "24.200.001",
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.credentials = credentials
        self.sessions = sessions
        self._http = http
        self._api_version = api_version
        self._retry = retry_policy or RetryPolicy(give_up_on=(RemoteTimeout,))

    # ── URLs ──────────────────────────────────────────────────────────────────

    def entity_url(self, endpoint: str, key_parts: Sequence[str] = ()) -> str:
        url = f"{self.credentials.url}/entity/Default/{self._api_version}/{endpoint}"
        for part in key_parts:
            url += "/" + quote(str(part), safe="")
        return url

    def file_url(self, file_id: str) -> str:
        return f"{self.credentials.url}/(W(2))/Frames/GetFile.ashx?fileID={quote(file_id, safe='')}"

    # ── Requests ──────────────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, str]] = None,
        expect_json: bool = True,
    ) -> httpx.Response:
        """Send an authenticated request, applying the retry policy."""
        return await self._retry.run(
            lambda: self._send_authenticated(method, url, params=params, expect_json=expect_json),
            description=f"{method} {url}",
        )

    async def _send_authenticated(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, str]],
        expect_json: bool,
    ) -> httpx.Response:
        session = await self.sessions.acquire(self.credentials)
        try:
            response = await self._send(session, method, url, params)
        except httpx.TimeoutException:
            logger.warning("Request timed out, retrying once on a new session: %s", url)
            session = await self._rotate(session)
            try:
                response = await self._send(session, method, url, params)
            except httpx.TimeoutException as exc:
                raise RemoteTimeout(f"Request timed out twice: {url}") from exc

        if response.status_code in (401, 403):
            logger.warning("Session rejected (%s), forcing a new session", response.status_code)
            session = await self._rotate(session)
            try:
                response = await self._send(session, method, url, params)
            except httpx.TimeoutException as exc:
                raise RemoteTimeout(f"Request timed out on a fresh session: {url}") from exc
            if response.status_code in (401, 403):
                raise SessionRejected(
                    f"Acumatica rejected a fresh session ({response.status_code}) for {url}",
                    response.status_code,
                )

        self._check(response, url, expect_json=expect_json)
        return response

    async def _rotate(self, session: RemoteSession) -> RemoteSession:
        return await self.sessions.acquire(self.credentials, force_new=True, replacing=session)

    async def _send(
        self,
        session: RemoteSession,
        method: str,
        url: str,
        params: Optional[Dict[str, str]],
    ) -> httpx.Response:
        headers = {"Cookie": session.cookie, "Accept": "application/json"}
        try:
            return await self._http.request(method, url, params=params, headers=headers)
        except httpx.TimeoutException:
            raise
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"Request to {url} failed: {exc}") from exc

    @staticmethod
    def _check(response: httpx.Response, url: str, *, expect_json: bool) -> None:
        status = response.status_code
        if status == 404 or (status == 500 and _MISSING_ENTITY_MARKER in response.text):
            raise RemoteRequestError(f"Not found: {url}", 404)
        if status == 429 or status >= 500:
            raise TransientRemoteError(
                f"Acumatica returned {status} for {url}: {response.text[:300]}", status
            )
        if status >= 400:
            raise RemoteRequestError(
                f"Acumatica returned {status} for {url}: {response.text[:300]}", status
            )
        if expect_json and response.text.lstrip().startswith("<"):
            raise TransientRemoteError(f"Received HTML instead of JSON from {url}", status)

    # ── Entity API ────────────────────────────────────────────────────────────

    async def list_entities(
        self,
        endpoint: str,
        *,
        filter: Optional[str] = None,
        select: Optional[Sequence[str]] = None,
        expand: Optional[Sequence[str]] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """List entities with OData query options."""
        params: Dict[str, str] = {}
        if filter:
            params["$filter"] = filter
        if select:
            params["$select"] = ",".join(select)
        if expand:
            params["$expand"] = ",".join(expand)
        if top:
            params["$top"] = str(top)
        if skip:
            params["$skip"] = str(skip)

        response = await self.request("GET", self.entity_url(endpoint), params=params)
        data = response.json()
        # The contract API returns a bare list; anything else means no rows
        return data if isinstance(data, list) else []

    async def get_entity(
        self,
        endpoint: str,
        key_parts: Sequence[str],
        *,
        expand: Optional[Sequence[str]] = None,
        select: Optional[Sequence[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Fetch one entity by key. Returns None if Acumatica does not have it."""
        params: Dict[str, str] = {}
        if expand:
            params["$expand"] = ",".join(expand)
        if select:
            params["$select"] = ",".join(select)
        try:
            response = await self.request("GET", self.entity_url(endpoint, key_parts), params=params)
        except RemoteRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return response.json()

    async def download_file(self, file_id: str) -> Tuple[bytes, str]:
        """Download one attached file. Returns (content, content_type)."""
        response = await self.request("GET", self.file_url(file_id), expect_json=False)
        content_type = response.headers.get("content-type", "application/octet-stream")
        return response.content, content_type.split(";")[0].strip()
