# API v1 router aggregation.
# Created: 2026-10-18
#
# mount_v1_routers(app) registers the OAuth routers at /api/v1/ and the
# discovery documents at the server root.

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

# Imported lazily inside mount_v1_routers() to avoid circular imports.
_V1_ROUTERS: list[tuple[str, str, str, str]] = [
    # (module_path, attr_name, prefix, tag)
    ("mcpauth.api.v1.oauth2", "router", "/api/v1", "OAuth2"),
    ("mcpauth.api.v1.discovery", "router", "", "Discovery"),
]


def mount_v1_routers(app: FastAPI) -> None:
    """Mount all v1 routers on *app*."""
    import importlib

    from fastapi import APIRouter

    for module_path, attr_name, prefix, tag in _V1_ROUTERS:
        mod = importlib.import_module(module_path)
        router: APIRouter = getattr(mod, attr_name)
        app.include_router(router, prefix=prefix)
        logger.debug("Mounted v1 router: %s (%s)", module_path, tag)
