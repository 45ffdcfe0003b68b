"""
FastAPI application entry point.

Serves the local chat API under /api:
  /api/conversations  conversation CRUD
  /api/messages       send (SSE or JSON), list, regenerate
  /api/settings       inference provider selection and credentials
  /api/health         liveness and readiness
"""

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatkeep import __version__
from chatkeep.auth import CachedIdentity, IdentityProvider, LocalIdentityProvider
from chatkeep.config import Settings, get_settings
from chatkeep.database import close_db, connect_db, get_database
from chatkeep.errors import StorageError
from chatkeep.llm import LLMProvider, create_provider
from chatkeep.orchestrator import ConversationOrchestrator
from chatkeep.routers import conversations, messages
from chatkeep.routers import settings as settings_router

# ============================================================
# Logging Configuration
# ============================================================
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Request-level chatter from the HTTP client
logging.getLogger("httpx").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    identity: Optional[IdentityProvider] = None,
    provider_factory: Callable[..., Optional[LLMProvider]] = create_provider,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings; defaults to get_settings().
        identity: Identity provider; defaults to the cached local user.
        provider_factory: Builds inference providers for the orchestrator.
    """
    settings = settings or get_settings()

    # ============================================================
    # Application Lifespan (startup/shutdown)
    # ============================================================
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting up chat application...")
        if settings.encryption_key == Settings.model_fields["encryption_key"].default:
            logger.warning(
                "ENCRYPTION_KEY is still the default; stored API keys are only "
                "obfuscated. Set a real secret in .env"
            )
        logger.info(f"CORS origins: {settings.cors_origins_list}")

        store = await connect_db(settings.sqlite_path, settings.encryption_key)
        app.state.identity = identity or CachedIdentity(
            LocalIdentityProvider(settings.local_user_id),
            ttl_seconds=settings.auth_cache_ttl_seconds,
        )
        app.state.orchestrator = ConversationOrchestrator(
            store, app.state.identity, provider_factory, settings
        )

        yield  # Application runs here

        logger.info("Shutting down chat application...")
        await app.state.orchestrator.close()
        await close_db()

    app = FastAPI(
        title="chatkeep API",
        description="Local-first chat client with streaming inference",
        version=__version__,
        lifespan=lifespan,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================================
    # API Routes: all mounted under /api prefix
    # ============================================================
    app.include_router(conversations.router, prefix="/api/conversations", tags=["Conversations"])
    app.include_router(messages.router, prefix="/api/messages", tags=["Messages"])
    app.include_router(settings_router.router, prefix="/api/settings", tags=["Settings"])

    # ============================================================
    # Health Check Endpoints
    # ============================================================
    @app.get("/api/health")
    async def health_check() -> dict:
        """Liveness probe: confirms the process is running."""
        return {"status": "healthy", "version": __version__}

    @app.get("/api/health/ready")
    async def readiness_check():
        """Readiness probe: verifies the database answers."""
        checks: dict = {}
        try:
            db = get_database()
            await db.command("ping")
            checks["database"] = "ok"
            checks["schema_version"] = await db.schema_version()
        except (RuntimeError, StorageError) as e:
            checks["database"] = f"error: {e}"
            return JSONResponse(
                status_code=503,
                content={"status": "not ready", "checks": checks},
            )
        return {"status": "ready", "checks": checks}

    return app


app = create_app()


# ============================================================
# Run with Uvicorn (for development)
# ============================================================
def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "chatkeep.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
