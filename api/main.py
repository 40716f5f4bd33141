"""
api/main.py — FastAPI application entry point.

Run locally:
    uvicorn api.main:app --reload

Architecture:
  - lifespan: builds store / orchestrator / service on startup (app.state)
  - All routes receive them via Depends(get_auth) / Depends(get_service)
  - Auth failures are mapped to HTTP statuses here, once, not per route
"""
from dotenv import load_dotenv
load_dotenv()

import logging

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from api.dependencies.teams import lifespan
from api.routers import auth, favourites, messages, people, search, teams
from teams_relay.errors import AuthExpired, AuthFailed, AuthRequired, LoginTimeout, TeamsRelayError

log = logging.getLogger("teams_relay.api")

app = FastAPI(
    title="Teams Relay API",
    description=(
        "Search, messaging, favourites and presence for Microsoft Teams, "
        "authenticated with a captured browser session."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# Trust X-Forwarded-* from a reverse proxy in front of the API
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])


# ── Error mapping ─────────────────────────────────────────────────────────────

def _error_body(exc: TeamsRelayError) -> dict:
    body = {"error": exc.__class__.__name__, "detail": str(exc), "remediation": exc.remediation}
    audience = getattr(exc, "audience", None)
    if audience:
        body["audience"] = audience
    return body


@app.exception_handler(TeamsRelayError)
async def teams_relay_error_handler(request: Request, exc: TeamsRelayError) -> JSONResponse:
    if isinstance(exc, (AuthRequired, AuthExpired)):
        status = 401
    elif isinstance(exc, LoginTimeout):
        status = 408
    elif isinstance(exc, AuthFailed):
        status = 502
    else:
        status = 500
    return JSONResponse(status_code=status, content=_error_body(exc))


@app.exception_handler(httpx.HTTPStatusError)
async def upstream_error_handler(request: Request, exc: httpx.HTTPStatusError) -> JSONResponse:
    log.warning("Upstream %s returned HTTP %d", exc.request.url.host, exc.response.status_code)
    return JSONResponse(
        status_code=502,
        content={
            "error":           "UpstreamError",
            "detail":          f"Teams returned HTTP {exc.response.status_code}",
            "upstream_status": exc.response.status_code,
        },
    )


@app.exception_handler(httpx.TransportError)
async def upstream_unreachable_handler(request: Request, exc: httpx.TransportError) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": "UpstreamUnreachable", "detail": str(exc)})


# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(auth.router,       prefix="/auth",       tags=["Auth"])
app.include_router(search.router,     prefix="/search",     tags=["Search"])
app.include_router(messages.router,   prefix="/messages",   tags=["Messages"])
app.include_router(favourites.router, prefix="/favourites", tags=["Favourites"])
app.include_router(teams.router,      prefix="/teams",      tags=["Teams"])
app.include_router(people.router,     prefix="/people",     tags=["People"])


# ── Health check ─────────────────────────────────────────────────────────────
@app.get("/health", tags=["Meta"])
async def health() -> dict:
    """Liveness check — returns 200 if the API process is alive."""
    return {"status": "ok"}
