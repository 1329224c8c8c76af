"""
Bearer-authenticated calls to the measurement/device backend.
Refreshes the access token before it expires, and once more on 401.
"""
import logging
from typing import Any

import httpx

from bio_dashboard.config import API_BASE_URL
from bio_dashboard.errors import NOT_SIGNED_IN, ApiError, AuthError
from bio_dashboard.session import AuthSession

logger = logging.getLogger(__name__)


def _json_or_none(r: httpx.Response) -> Any:
    if not r.content or not r.headers.get("content-type", "").startswith("application/json"):
        return None
    try:
        return r.json()
    except ValueError as e:
        raise ApiError(r.status_code, r.text) from e


class ApiClient:
    def __init__(self, session: AuthSession, http: httpx.AsyncClient, base_url: str = API_BASE_URL) -> None:
        self.session = session
        self.http = http
        self.base_url = base_url.rstrip("/")

    async def authorized_get(self, path: str, query: dict[str, Any] | None = None) -> Any:
        return await self._request("GET", path, params=query)

    async def authorized_put(self, path: str, body: dict[str, Any]) -> Any:
        return await self._request("PUT", path, json=body)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        creds = self.session.credentials()
        if creds is not None and creds.refresh_token and creds.access_token_expired_or_soon(buffer_seconds=60):
            await self.session.refresh(creds.access_token)

        token = self._token()
        r = await self._send(method, path, token, **kwargs)
        if r.status_code == 401 and await self.session.refresh(token):
            logger.info("401 from %s %s; retrying with refreshed token", method, path)
            r = await self._send(method, path, self._token(), **kwargs)

        if not r.is_success:
            raise ApiError(r.status_code, r.text)
        return _json_or_none(r)

    def _token(self) -> str:
        token = self.session.current_access_token()
        if token is None:
            raise AuthError(NOT_SIGNED_IN, "Sign in to call the API")
        return token

    async def _send(self, method: str, path: str, token: str, **kwargs: Any) -> httpx.Response:
        return await self.http.request(
            method,
            f"{self.base_url}{path}",
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            **kwargs,
        )
