"""Shared test helpers: fake tokens, signed-in stores and mock HTTP transports."""
import base64
import json
import time

import httpx

from bio_dashboard.config import IdentityProvider
from bio_dashboard.session import AuthSession
from bio_dashboard.token_store import Credentials, TokenStore

PROVIDER = IdentityProvider(
    domain="https://idp.example",
    client_id="client1",
    scope="openid email",
    redirect_uri="http://localhost:8000/",
)
API_BASE = "https://api.example"


def make_token(claims: dict) -> str:
    """Unsigned three-part token; only the payload segment matters to the client."""

    def seg(obj: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).rstrip(b"=").decode()

    return f"{seg({'alg': 'none', 'typ': 'JWT'})}.{seg(claims)}.sig"


def signed_in_store(groups=None, *, access_token="at-1", refresh_token=None, expires_in=3600, issued_at=None):
    claims = {"sub": "user-1", "email": "nurse@example.com"}
    if groups is not None:
        claims["cognito:groups"] = groups
    store = TokenStore()
    store.save(
        Credentials(
            access_token=access_token,
            id_token=make_token(claims),
            refresh_token=refresh_token,
            expires_in=expires_in,
            issued_at=time.time() if issued_at is None else issued_at,
        )
    )
    return store


class Recorder:
    """MockTransport handler that records requests and answers from a route function."""

    def __init__(self, route):
        self.route = route
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.route(request)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def make_http(route):
    recorder = Recorder(route)
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder)), recorder


def make_session(store: TokenStore, route):
    http, recorder = make_http(route)
    return AuthSession(store, http, PROVIDER, app_base_url="http://localhost:8000"), recorder
