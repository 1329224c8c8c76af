"""
PKCE (RFC 7636) primitives and identity provider URL builders.
S256 only; verifier and anti-CSRF state come from the same secure random source.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from dataclasses import dataclass
from urllib.parse import urlencode

VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128


@dataclass(frozen=True)
class ExchangeMaterial:
    verifier: str
    challenge: str
    state: str


def random_token(length: int) -> str:
    """
    Cryptographically random string of exactly `length` base64url characters.
    Every character is in the RFC 7636 unreserved set, so the result is a valid verifier.
    """
    if length < 1:
        raise ValueError("length must be positive")
    # token_urlsafe(n) yields ~1.3 chars per byte, so n=length always covers length chars
    return secrets.token_urlsafe(length)[:length]


def derive_challenge(verifier: str) -> str:
    """base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_exchange_material(verifier_length: int = 64, state_length: int = 24) -> ExchangeMaterial:
    if not VERIFIER_MIN_LENGTH <= verifier_length <= VERIFIER_MAX_LENGTH:
        raise ValueError(f"verifier length must be {VERIFIER_MIN_LENGTH}..{VERIFIER_MAX_LENGTH}")
    verifier = random_token(verifier_length)
    return ExchangeMaterial(
        verifier=verifier,
        challenge=derive_challenge(verifier),
        state=random_token(state_length),
    )


def build_authorize_url(
    *,
    authorize_endpoint: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
) -> str:
    """Build the provider authorization request URL."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "scope": scope,
        "redirect_uri": redirect_uri,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{authorize_endpoint}?{urlencode(params)}"


def build_logout_url(*, logout_endpoint: str, client_id: str, logout_uri: str) -> str:
    return f"{logout_endpoint}?{urlencode({'client_id': client_id, 'logout_uri': logout_uri})}"
