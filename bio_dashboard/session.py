"""
Sign-in session: Authorization Code + PKCE state machine, token exchange and refresh,
sign-out and claims-based role.

Lifecycle: construct (loads from the token store) -> sign in / sign out -> dispose().
One session per app; pass it to the API client and the telemetry pipeline.
"""
import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
from jwt.utils import base64url_decode

from bio_dashboard.config import APP_BASE_URL, IdentityProvider
from bio_dashboard.errors import (
    EXCHANGE_FAILED,
    MISSING_VERIFIER,
    PROVIDER_DENIED,
    STATE_MISMATCH,
    AuthError,
)
from bio_dashboard.pkce import build_authorize_url, build_logout_url, generate_exchange_material
from bio_dashboard.token_store import Credentials, TokenStore

logger = logging.getLogger(__name__)

# Query parameters the provider adds on redirect back; removed from the visible URL
AUTH_QUERY_PARAMS = ("code", "state", "session_state", "error", "error_description")


class SessionState(str, enum.Enum):
    SIGNED_OUT = "signed_out"
    AWAITING_REDIRECT = "awaiting_redirect"
    AWAITING_CALLBACK = "awaiting_callback"
    SIGNED_IN = "signed_in"


class Role(str, enum.Enum):
    ADMIN = "admin"
    VIEWER = "viewer"


@dataclass(frozen=True)
class CallbackResult:
    handled: bool
    clean_url: str | None = None


def decode_claims(token: str | None) -> dict[str, Any]:
    """
    Payload of a dot-separated signed token, without signature verification.
    Only the middle segment is read. Malformed input yields {}.
    """
    if not isinstance(token, str):
        return {}
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return {}
    try:
        payload = json.loads(base64url_decode(parts[1]))
    except (ValueError, TypeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def role_from_claims(claims: dict[str, Any], groups_claim: str = "cognito:groups") -> Role:
    """admin iff the groups claim (delimited string or list) contains "admin"."""
    groups = claims.get(groups_claim)
    if isinstance(groups, str):
        members = [g.strip() for g in groups.replace(" ", ",").split(",")]
    elif isinstance(groups, (list, tuple)):
        members = [str(g).strip() for g in groups]
    else:
        members = []
    return Role.ADMIN if "admin" in members else Role.VIEWER


def strip_auth_params(url: str) -> str:
    """Same URL without the provider's callback parameters."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in AUTH_QUERY_PARAMS]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment))


def _first(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    return values[0] if values else None


class AuthSession:
    def __init__(
        self,
        store: TokenStore,
        http: httpx.AsyncClient,
        provider: IdentityProvider,
        *,
        app_base_url: str = APP_BASE_URL,
    ) -> None:
        self.store = store
        self.http = http
        self.provider = provider
        self.app_base_url = app_base_url.rstrip("/") + "/"
        self._refresh_lock = asyncio.Lock()
        self.state = SessionState.SIGNED_OUT
        if self.is_signed_in():
            self.state = SessionState.SIGNED_IN
        elif store.has_exchange_material():
            self.state = SessionState.AWAITING_CALLBACK

    # --- sign in ---

    def begin_sign_in(self) -> str:
        """
        Generate verifier, challenge and state; stash them; return the authorization URL.
        The caller navigates to it; control comes back through the callback.
        """
        self.state = SessionState.AWAITING_REDIRECT
        material = generate_exchange_material()
        self.store.stash_exchange_material(material)
        url = build_authorize_url(
            authorize_endpoint=self.provider.authorize_endpoint,
            client_id=self.provider.client_id,
            redirect_uri=self.provider.redirect_uri,
            scope=self.provider.scope,
            state=material.state,
            code_challenge=material.challenge,
        )
        self.state = SessionState.AWAITING_CALLBACK
        logger.info("Redirecting to identity provider for sign-in")
        return url

    async def complete_sign_in_if_callback_present(self, url: str) -> CallbackResult:
        """
        Handle the provider's redirect back. Not a callback (no code, no error) -> handled=False.
        Raises AuthError on provider error, state mismatch, missing verifier or failed exchange.
        """
        params = parse_qs(urlsplit(url).query, keep_blank_values=False)
        error = _first(params, "error")
        if error:
            self._fail()
            raise AuthError(PROVIDER_DENIED, _first(params, "error_description") or error)

        code = _first(params, "code")
        if not code:
            return CallbackResult(handled=False)

        material = self.store.take_exchange_material()
        if material is None:
            self._fail()
            raise AuthError(MISSING_VERIFIER, "No sign-in in progress; sign in again")
        if _first(params, "state") != material.state:
            self._fail()
            logger.warning("Callback state does not match the stashed state; not exchanging code")
            raise AuthError(STATE_MISMATCH, "Sign-in was started in another window or session")

        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self.provider.client_id,
                "code": code,
                "redirect_uri": self.provider.redirect_uri,
                "code_verifier": material.verifier,
            }
        )
        credentials = Credentials.from_token_response(data)
        if not credentials.access_token:
            self._fail()
            raise AuthError(EXCHANGE_FAILED, "Token response had no access_token")

        self.store.save(credentials)
        self.state = SessionState.SIGNED_IN
        logger.info("Signed in (role=%s)", self.current_role().value)
        return CallbackResult(handled=True, clean_url=strip_auth_params(url))

    async def _token_request(self, form: dict[str, str]) -> dict[str, Any]:
        """POST to the token endpoint. Raises AuthError(exchange_failed) on any failure."""
        try:
            r = await self.http.post(
                self.provider.token_endpoint,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            self._fail()
            raise AuthError(EXCHANGE_FAILED, str(e)) from e
        if not r.is_success:
            self._fail()
            raise AuthError(EXCHANGE_FAILED, status=r.status_code, body=r.text)
        try:
            data = r.json()
        except ValueError as e:
            self._fail()
            raise AuthError(EXCHANGE_FAILED, "Token response is not JSON", status=r.status_code) from e
        if not isinstance(data, dict):
            self._fail()
            raise AuthError(EXCHANGE_FAILED, "Token response is not an object", status=r.status_code)
        return data

    def _fail(self) -> None:
        self.store.discard_exchange_material()
        if not self.is_signed_in():
            self.state = SessionState.SIGNED_OUT

    async def refresh(self, stale_token: str | None = None) -> bool:
        """
        Exchange the refresh token for a new credential set.
        On failure the session is signed out and False is returned.

        stale_token is the access token the caller found wanting (default: the current one).
        Refreshes run one at a time; if the stored token already differs from stale_token,
        another caller refreshed it and True is returned without a second token request.
        """
        seen = stale_token if stale_token is not None else self.current_access_token()
        async with self._refresh_lock:
            current = self.store.load()
            if current is None:
                return False
            if current.access_token != seen:
                return True
            if not current.refresh_token:
                return False
            return await self._refresh_with(current)

    async def _refresh_with(self, current: Credentials) -> bool:
        try:
            data = await self._token_request(
                {
                    "grant_type": "refresh_token",
                    "client_id": self.provider.client_id,
                    "refresh_token": current.refresh_token,
                }
            )
        except AuthError as e:
            logger.warning("Token refresh failed: %s", e.code)
            self._sign_out_locally()
            return False
        credentials = Credentials.from_token_response(data, previous=current)
        if not credentials.access_token:
            self._sign_out_locally()
            return False
        self.store.save(credentials)
        self.state = SessionState.SIGNED_IN
        logger.info("Access token refreshed")
        return True

    # --- sign out ---

    def sign_out(self) -> str:
        """Clear local tokens and exchange material; return the provider logout URL."""
        self._sign_out_locally()
        logger.info("Signed out")
        return build_logout_url(
            logout_endpoint=self.provider.logout_endpoint,
            client_id=self.provider.client_id,
            logout_uri=self.app_base_url,
        )

    def _sign_out_locally(self) -> None:
        self.store.clear()
        self.store.discard_exchange_material()
        self.state = SessionState.SIGNED_OUT

    def dispose(self) -> None:
        """Teardown: abandon any redirect round trip in progress. Stored credentials stay."""
        self.store.discard_exchange_material()
        self.state = SessionState.SIGNED_IN if self.is_signed_in() else SessionState.SIGNED_OUT

    # --- queries ---

    def credentials(self) -> Credentials | None:
        return self.store.load()

    def is_signed_in(self) -> bool:
        creds = self.store.load()
        return bool(creds and creds.access_token)

    def current_access_token(self) -> str | None:
        creds = self.store.load()
        if creds is None or not creds.access_token:
            return None
        return creds.access_token

    def claims(self) -> dict[str, Any]:
        """ID token claims; access token claims when there is no usable ID token."""
        creds = self.store.load()
        if creds is None:
            return {}
        return decode_claims(creds.id_token) or decode_claims(creds.access_token)

    def current_role(self) -> Role:
        return role_from_claims(self.claims(), self.provider.groups_claim)
