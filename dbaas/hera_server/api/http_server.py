"""
HTTP API for HERA Server.

FastAPI application exposing one POST endpoint per action family:

    POST /v1/rpc/entities
    POST /v1/rpc/relationships
    POST /v1/rpc/transactions
    POST /v1/rpc/dynamic-data
    POST /v1/rpc/organizations
    GET  /v1/rpc            (resource -> supported actions)
    GET  /health

The body of each POST is the RPC envelope. The response body is always an
envelope; the HTTP status follows the error kind (400 validation, 403
authorization, 404 not found, 409 conflict, 500 internal).

Invariants:
    - The optional session header (X-Organization-ID by default) must match
      the envelope organization_id
    - The app owns one UniversalStore; dependencies are built in create_app()
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import ServerConfig
from ..orchestrate import SmartCodePolicy
from ..orchestrate.errors import PAYLOAD_INVALID
from ..store import UniversalStore
from .dispatcher import RpcDispatcher

logger = logging.getLogger(__name__)


def build_store(config: ServerConfig) -> UniversalStore:
    return UniversalStore(
        data_dir=config.storage.data_dir,
        database_name=config.storage.database_name,
        wal_mode=config.storage.wal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
        cache_size_pages=config.storage.cache_size_pages,
    )


def create_app(
    config: ServerConfig | None = None,
    store: UniversalStore | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Server configuration (defaults to ServerConfig.from_env())
        store: Store to serve (defaults to one built from config.storage)

    Returns:
        Configured FastAPI app
    """
    config = config or ServerConfig.from_env()
    store = store or build_store(config)
    policy = SmartCodePolicy(
        strict=config.smart_codes.strict,
        registry=config.smart_codes.build_registry(),
    )
    dispatcher = RpcDispatcher(store, policy)
    session_header = config.http.session_header

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Initialize the store before serving."""
        await store.initialize()
        logger.info("HERA HTTP API ready", extra={"resources": dispatcher.resources})
        yield

    app = FastAPI(
        title="HERA Universal API",
        description="RPC-style access to the six universal tables.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.dispatcher = dispatcher

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "hera-server", "version": __version__}

    @app.get("/v1/rpc")
    async def list_actions():
        return {
            resource: sorted(dispatcher.orchestrators[resource].actions)
            for resource in dispatcher.resources
        }

    @app.post("/v1/rpc/{resource}")
    async def rpc(resource: str, request: Request) -> JSONResponse:
        try:
            envelope = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "error": PAYLOAD_INVALID,
                    "error_detail": "request body is not valid JSON",
                },
            )

        result = await dispatcher.dispatch(
            resource,
            envelope,
            session_organization_id=request.headers.get(session_header),
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    return app
