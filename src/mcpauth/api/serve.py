"""API server for ``mcpauth serve``.

Mounts the OAuth endpoints under ``/api/v1/`` and the discovery documents at
the root. MCP backends embedding the engine can mount the same routers on
their own app and protect tool routes with ``require_access_token``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL = 300  # seconds


async def _cleanup_loop() -> None:
    """Periodically drop expired OAuth records and stale rate-limit buckets."""
    from mcpauth.api.oauth2.server import get_oauth_server
    from mcpauth.security.rate_limiter import cleanup_all

    while True:
        await asyncio.sleep(CLEANUP_INTERVAL)
        try:
            store = get_oauth_server().store
            cleanup = getattr(store, "cleanup_expired", None)
            if cleanup is not None:
                removed = cleanup()
                if removed:
                    logger.debug("Removed %d expired OAuth records", removed)
            cleanup_all()
        except Exception:
            logger.exception("OAuth cleanup failed")


@contextlib.asynccontextmanager
async def _lifespan(app):
    task = asyncio.create_task(_cleanup_loop())
    try:
        yield
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


def create_api_app():
    """Build the FastAPI application."""
    from fastapi import FastAPI
    from fastapi.middleware.cors import CORSMiddleware

    from mcpauth.api.v1 import mount_v1_routers

    app = FastAPI(
        title="mcpauth",
        description="OAuth 2.1 authorization server for MCP backends.",
        version="1.0.0",
        docs_url="/api/v1/docs",
        redoc_url="/api/v1/redoc",
        openapi_url="/api/v1/openapi.json",
        lifespan=_lifespan,
    )

    # --- CORS -----------------------------------------------------------
    # Browser-based MCP clients fetch discovery and call the token endpoint
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    # --- Mount routers --------------------------------------------------
    mount_v1_routers(app)

    return app


def run_api_server(
    host: str = "127.0.0.1",
    port: int = 8888,
    dev: bool = False,
) -> None:
    """Start the authorization server."""
    import uvicorn

    from mcpauth.config import get_settings

    # Fail before binding the port rather than on the first request
    get_settings().validate_security_config()

    print("\n" + "=" * 50)
    print("MCPAUTH AUTHORIZATION SERVER")
    print("=" * 50)
    print(f"\nIssuer:   {get_settings().issuer}")
    print(f"Resource: {get_settings().resource}")
    print(f"API docs: http://{host}:{port}/api/v1/docs\n")

    if dev:
        import pathlib

        src_dir = str(pathlib.Path(__file__).resolve().parent.parent)
        uvicorn.run(
            "mcpauth.api.serve:create_api_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            reload_dirs=[src_dir],
            reload_includes=["*.py"],
            log_level="debug",
        )
    else:
        app = create_api_app()
        uvicorn.run(app, host=host, port=port)
