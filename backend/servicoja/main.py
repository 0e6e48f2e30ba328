import logging
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from servicoja.routers import (
    auth,
    categories,
    conversations,
    favorites,
    notifications,
    orders,
    providers,
    reviews,
    services,
    users,
)
from servicoja.services.marketplace_store import marketplace_store
from servicoja.services.push_sender import push_sender


def _log_level(name: str, default: int) -> int:
    level = logging.getLevelName(os.getenv(name, "").strip().upper())
    return level if isinstance(level, int) else default


logging.basicConfig(
    level=_log_level("LOG_LEVEL", logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="ServiçoJá API", version="1.0.0")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


cors_origins = _parse_csv_env("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = _parse_csv_env("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

api_prefix = "/" + os.getenv("API_PREFIX", "/api").strip().strip("/")
if api_prefix == "/":
    api_prefix = ""

for module in (auth, users, categories, providers, services, reviews, favorites, orders, notifications):
    app.include_router(module.router, prefix=api_prefix)
app.include_router(conversations.router, prefix=api_prefix)
app.include_router(conversations.messages_router, prefix=api_prefix)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    database_ok = marketplace_store.ping()
    return {
        "status": "ready" if database_ok else "degraded",
        "database": "ok" if database_ok else "unavailable",
        "push_enabled": push_sender.enabled,
    }
