"""
Bio Dashboard web app.
Sign in with the identity provider (PKCE), then poll telemetry for the selected device.
GET /, /login, /logout; JSON under /api for the display. Port 8000.
"""
import html
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel

from bio_dashboard.api_client import ApiClient
from bio_dashboard.config import (
    API_BASE_URL,
    APP_BASE_URL,
    HTTP_TIMEOUT_SECONDS,
    TOKEN_STORE_PATH,
    IdentityProvider,
    default_provider,
)
from bio_dashboard.errors import ApiError, AuthError, AuthorizationError
from bio_dashboard.pipeline import TelemetryPipeline
from bio_dashboard.session import AuthSession
from bio_dashboard.token_store import JsonFileStorage, MemoryStorage, TokenStore

logger = logging.getLogger(__name__)


class SelectDevice(BaseModel):
    device_id: str


class PatientLink(BaseModel):
    value: str
    field: str = "patient_id"


class ScrubMove(BaseModel):
    view_end: int | None = None
    follow_live: bool | None = None
    jump_to_live: bool = False


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  {body}
</body>
</html>""",
        status_code=status_code,
    )


def create_app(
    *,
    store: TokenStore | None = None,
    http: httpx.AsyncClient | None = None,
    provider: IdentityProvider | None = None,
    api_base_url: str = API_BASE_URL,
    app_base_url: str = APP_BASE_URL,
    autostart: bool = True,
    pipeline_options: dict | None = None,
) -> FastAPI:
    """
    Wire session, API client and pipeline into a FastAPI app.
    autostart=False leaves polling to explicit /api/telemetry/poll calls.
    """
    if store is None:
        durable = JsonFileStorage(TOKEN_STORE_PATH) if TOKEN_STORE_PATH else MemoryStorage()
        store = TokenStore(durable=durable, session=MemoryStorage())
    owns_http = http is None
    if http is None:
        http = httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)

    session = AuthSession(store, http, provider or default_provider(), app_base_url=app_base_url)
    api = ApiClient(session, http, api_base_url)
    pipeline = TelemetryPipeline(api, session, **(pipeline_options or {}))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Resume polling for a stored session; stop timers and close HTTP on shutdown."""
        if autostart and session.is_signed_in():
            pipeline.start()
        yield
        await pipeline.dispose()
        session.dispose()
        if owns_http:
            await http.aclose()

    app = FastAPI(title="Bio Dashboard", version="0.1.0", lifespan=lifespan)
    app.state.session = session
    app.state.api = api
    app.state.pipeline = pipeline

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        return JSONResponse(
            status_code=502,
            content={"error": "api_error", "status": exc.status_code, "detail": exc.body},
        )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=401, content={"error": exc.code, "detail": exc.description})

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError):
        return JSONResponse(status_code=403, content={"error": "forbidden", "detail": str(exc)})

    def require_signed_in() -> AuthSession:
        if not session.is_signed_in():
            raise HTTPException(status_code=401, detail={"error": "not_signed_in"})
        return session

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "bio_dashboard"}

    @app.get("/", response_class=HTMLResponse)
    async def home(request: Request):
        """
        Every page load checks for a provider callback (?code=... or ?error=...).
        A completed sign-in redirects to the same URL without the auth parameters.
        """
        try:
            result = await session.complete_sign_in_if_callback_present(str(request.url))
        except AuthError as e:
            logger.warning("Sign-in failed: %s", e.code)
            return _page(
                "Sign-in failed",
                f'<p>{html.escape(str(e))}</p>\n  <p><a href="/">Dismiss</a> | <a href="/login">Sign in</a></p>',
                status_code=400,
            )
        if result.handled:
            # a new sign-in starts from an empty pipeline
            await pipeline.stop()
            if autostart:
                pipeline.start()
            return RedirectResponse(url=result.clean_url, status_code=303)

        if not session.is_signed_in():
            return _page("Bio Dashboard", '<p><a href="/login">Sign in</a></p>')
        role = session.current_role().value
        return _page(
            "Bio Dashboard",
            f"<p>Signed in as {html.escape(role)}.</p>\n"
            '  <p><a href="/api/telemetry">Live data (JSON)</a> | <a href="/logout">Sign out</a></p>',
        )

    @app.get("/login")
    def login():
        """Redirect to the provider's authorization endpoint with a fresh PKCE challenge."""
        return RedirectResponse(url=session.begin_sign_in(), status_code=302)

    @app.get("/logout")
    async def logout():
        """Stop polling, forget tokens, redirect to the provider's logout endpoint."""
        await pipeline.stop()
        return RedirectResponse(url=session.sign_out(), status_code=302)

    @app.get("/api/me")
    def me(s: AuthSession = Depends(require_signed_in)):
        claims = s.claims()
        return {
            "signed_in": True,
            "role": s.current_role().value,
            "sub": claims.get("sub"),
            "email": claims.get("email"),
        }

    @app.get("/api/devices")
    async def devices(refresh: bool = False, s: AuthSession = Depends(require_signed_in)):
        if refresh or not pipeline.devices:
            await pipeline.load_devices()
        return {
            "items": [d.to_dict() for d in pipeline.devices],
            "selected_device_id": pipeline.selected_device_id,
        }

    @app.post("/api/devices/select")
    def select_device(body: SelectDevice, s: AuthSession = Depends(require_signed_in)):
        try:
            pipeline.select_device(body.device_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail={"error": "unknown_device", "detail": str(e)})
        return {"selected_device_id": pipeline.selected_device_id}

    @app.put("/api/devices/{device_id}/patient")
    async def update_patient(device_id: str, body: PatientLink, s: AuthSession = Depends(require_signed_in)):
        """Admin only; the device list is reloaded after the write."""
        try:
            device = await pipeline.update_patient_link(device_id, body.value, body.field)
        except ValueError as e:
            raise HTTPException(status_code=422, detail={"error": "invalid_value", "detail": str(e)})
        return {"device": device.to_dict() if device else None}

    @app.get("/api/telemetry")
    def telemetry(s: AuthSession = Depends(require_signed_in)):
        return pipeline.snapshot()

    @app.post("/api/telemetry/poll")
    async def poll(s: AuthSession = Depends(require_signed_in)):
        """Run one poll now (outside the timer)."""
        if not pipeline.devices:
            await pipeline.load_devices()
        installed = await pipeline.poll_once()
        return {"installed": installed, **pipeline.snapshot()}

    @app.post("/api/scrub")
    def scrub(body: ScrubMove, s: AuthSession = Depends(require_signed_in)):
        if body.jump_to_live:
            pipeline.jump_to_live()
        elif body.view_end is not None:
            pipeline.move_scrub(body.view_end)
        elif body.follow_live is not None:
            pipeline.set_follow_live(body.follow_live)
        return pipeline.scrub.as_dict()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bio_dashboard.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
