"""
Bio dashboard configuration. Identity provider, backend API and telemetry constants.
Client id and URLs are public identifiers, not secrets.
"""
import os
from dataclasses import dataclass
from urllib.parse import urlsplit

# Identity provider (hosted OAuth2/OIDC domain)
OAUTH_DOMAIN = os.environ.get("OAUTH_DOMAIN", "https://auth.example.com").rstrip("/")

# Public client; PKCE replaces the client secret
CLIENT_ID = os.environ.get("OAUTH_CLIENT_ID", "bio-dashboard")

DEFAULT_SCOPE = os.environ.get("OAUTH_SCOPE", "openid email")

# Callback is the app root: every page load checks for ?code=...
REDIRECT_URI_DEV = os.environ.get("OAUTH_REDIRECT_URI_DEV", "http://localhost:8000/")
REDIRECT_URI_PROD = os.environ.get("OAUTH_REDIRECT_URI_PROD", "https://dashboard.example.com/")

# Where this app is served; https selects the prod redirect URI
APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:8000").rstrip("/")

AUTHORIZE_PATH = os.environ.get("OAUTH_AUTHORIZE_PATH", "/oauth2/authorize")
TOKEN_PATH = os.environ.get("OAUTH_TOKEN_PATH", "/oauth2/token")
LOGOUT_PATH = os.environ.get("OAUTH_LOGOUT_PATH", "/logout")

# Claim carrying group membership (string or list)
GROUPS_CLAIM = os.environ.get("OAUTH_GROUPS_CLAIM", "cognito:groups")

# Measurement/device backend
API_BASE_URL = os.environ.get("API_BASE_URL", "http://127.0.0.1:7000").rstrip("/")

# Durable token record (localStorage equivalent). Empty string keeps tokens in memory only.
TOKEN_STORE_PATH = os.environ.get("TOKEN_STORE_PATH", ".bio_tokens.json")

HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "10"))

# Telemetry
POLL_INTERVAL_MS = int(os.environ.get("POLL_INTERVAL_MS", "1000"))
RETENTION_SPAN_MS = int(os.environ.get("RETENTION_SPAN_MS", "60000"))
PAGE_LIMIT = int(os.environ.get("PAGE_LIMIT", "500"))
ECG_CHUNK_DURATION_MS = int(os.environ.get("ECG_CHUNK_DURATION_MS", "1000"))
DISPLAY_SPAN_MS = int(os.environ.get("DISPLAY_SPAN_MS", "10000"))


def is_prod(base_url: str = APP_BASE_URL) -> bool:
    return urlsplit(base_url).scheme == "https"


@dataclass(frozen=True)
class IdentityProvider:
    """Endpoints and client registration at the identity provider."""

    domain: str
    client_id: str
    scope: str
    redirect_uri: str
    authorize_path: str = "/oauth2/authorize"
    token_path: str = "/oauth2/token"
    logout_path: str = "/logout"
    groups_claim: str = "cognito:groups"

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.domain}{self.authorize_path}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.domain}{self.token_path}"

    @property
    def logout_endpoint(self) -> str:
        return f"{self.domain}{self.logout_path}"


def default_provider() -> IdentityProvider:
    return IdentityProvider(
        domain=OAUTH_DOMAIN,
        client_id=CLIENT_ID,
        scope=DEFAULT_SCOPE,
        redirect_uri=REDIRECT_URI_PROD if is_prod() else REDIRECT_URI_DEV,
        authorize_path=AUTHORIZE_PATH,
        token_path=TOKEN_PATH,
        logout_path=LOGOUT_PATH,
        groups_claim=GROUPS_CLAIM,
    )
