"""
Error taxonomy. None of these is fatal: callers surface them as messages and carry on.
"""

PROVIDER_DENIED = "provider_denied"
STATE_MISMATCH = "state_mismatch"
MISSING_VERIFIER = "missing_verifier"
EXCHANGE_FAILED = "exchange_failed"
NOT_SIGNED_IN = "not_signed_in"


class AuthError(Exception):
    """Sign-in failed; the session stays signed out."""

    def __init__(
        self,
        code: str,
        description: str | None = None,
        *,
        status: int | None = None,
        body: str | None = None,
    ):
        self.code = code
        self.description = description
        self.status = status
        self.body = body
        super().__init__(self._message())

    def _message(self) -> str:
        msg = self.code
        if self.status is not None:
            msg = f"{msg} ({self.status})"
        detail = self.description or self.body
        if detail:
            msg = f"{msg}: {detail}"
        return msg


class ApiError(Exception):
    """Backend answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"{status_code} {body}".strip())


class AuthorizationError(Exception):
    """Current role may not perform the operation."""
