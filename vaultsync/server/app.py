"""Vault API server built on Starlette and served by uvicorn."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..configuration import ConfigurationBundle, load_runtime_configuration, provision_data_dir
from ..errors import UnauthorizedError
from ..logging_utils import setup_logging
from ..service import VaultVersioningService
from ..storage import Database, FilesystemBlobStore
from .auth import TokenAuthority, UserDirectory, fingerprint
from .routes import (
    download_handler,
    health_handler,
    login_handler,
    metadata_handler,
    register_handler,
    rollback_handler,
    upload_handler,
    versions_handler,
)

logger = logging.getLogger("vaultsync.server.app")

PUBLIC_PATHS = frozenset({"/health", "/api/register", "/api/login"})


class APIServerState(str, Enum):
    """API server lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """Resolves ``Authorization: Bearer`` into ``request.state.user_id``."""

    async def dispatch(self, request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        header = request.headers.get("authorization", "")
        scheme, _, token = header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return JSONResponse({"error": "missing bearer token"}, status_code=401)

        tokens = request.app.state.vault_server.tokens
        try:
            request.state.user_id = await run_in_threadpool(tokens.resolve, token)
        except UnauthorizedError as exc:
            logger.info("Rejected token %s: %s", fingerprint(token), exc.message)
            return JSONResponse({"error": exc.message}, status_code=401)

        return await call_next(request)


@dataclass
class VaultAPIServer:
    """Owns the storage components and the HTTP application around them."""

    config_bundle: ConfigurationBundle

    database: Database = field(init=False)
    blob_store: FilesystemBlobStore = field(init=False)
    service: VaultVersioningService = field(init=False)
    users: UserDirectory = field(init=False)
    tokens: TokenAuthority = field(init=False)

    _state: APIServerState = field(default=APIServerState.STOPPED, init=False)
    _server: Optional[Any] = field(default=None, init=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False)
    _loop: Optional[asyncio.AbstractEventLoop] = field(default=None, init=False)

    def __post_init__(self) -> None:
        settings = self._get_server_config()
        self.database = Database(self.config_bundle.resolve_path(settings["database"]))
        self.blob_store = FilesystemBlobStore(self.config_bundle.resolve_path(settings["blob_dir"]))
        self.service = VaultVersioningService(
            self.database,
            self.blob_store,
            reject_stale_uploads=bool(settings.get("reject_stale_uploads", False)),
        )
        self.users = UserDirectory(self.database)
        self.tokens = TokenAuthority(self.database, ttl_seconds=int(settings.get("token_ttl", 86400)))

    @property
    def state(self) -> APIServerState:
        return self._state

    @property
    def host(self) -> str:
        return self._get_server_config().get("host", "127.0.0.1")

    @property
    def port(self) -> int:
        return int(self._get_server_config().get("port", 8443))

    @property
    def max_versions_page(self) -> int:
        return int(self._get_server_config().get("max_versions_page", 100))

    @property
    def default_versions_page(self) -> int:
        return int(self._get_server_config().get("default_versions_page", 20))

    def _get_server_config(self) -> Dict[str, Any]:
        return self.config_bundle.section("server")

    def initialize(self) -> None:
        """Create the database schema and blob directory."""
        self.database.initialize()
        self.blob_store.initialize()

    def create_app(self) -> Starlette:
        """Create the Starlette application."""
        self.initialize()

        middleware = []
        cors_origins = self._get_server_config().get("cors_origins", [])
        if cors_origins:
            middleware.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=cors_origins,
                    allow_credentials=True,
                    allow_methods=["*"],
                    allow_headers=["*"],
                )
            )
        middleware.append(Middleware(BearerAuthMiddleware))

        routes = [
            Route("/health", health_handler, methods=["GET"]),
            Route("/api/register", register_handler, methods=["POST"]),
            Route("/api/login", login_handler, methods=["POST"]),
            Route("/api/vault", metadata_handler, methods=["GET"]),
            Route("/api/vault/upload", upload_handler, methods=["POST"]),
            Route("/api/vault/download", download_handler, methods=["GET"]),
            Route("/api/vault/versions", versions_handler, methods=["GET"]),
            Route("/api/vault/rollback", rollback_handler, methods=["POST"]),
        ]

        app = Starlette(
            routes=routes,
            middleware=middleware,
            lifespan=self._lifespan,
        )
        app.state.vault_server = self
        return app

    @asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        logger.info("API server starting on %s:%s", self.host, self.port)
        self._state = APIServerState.RUNNING
        try:
            yield
        finally:
            logger.info("API server shutting down")
            self._state = APIServerState.STOPPED

    def start(self, blocking: bool = False) -> bool:
        """Start the API server.

        Args:
            blocking: If True, block until server stops. If False, run in background thread.

        Returns:
            True if server started successfully.
        """
        if self._state == APIServerState.RUNNING:
            logger.warning("API server is already running")
            return False

        self._state = APIServerState.STARTING
        app = self.create_app()

        config = uvicorn.Config(
            app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)

        if blocking:
            try:
                asyncio.run(self._server.serve())
            except Exception as e:
                logger.exception("API server error: %s", e)
                self._state = APIServerState.ERROR
                return False
            return True

        self._thread = threading.Thread(
            target=self._run_in_thread,
            daemon=True,
            name="vaultsync-api-server",
        )
        self._thread.start()

        for _ in range(20):  # up to 2 seconds
            time.sleep(0.1)
            if self._state == APIServerState.RUNNING:
                break

        return self._state == APIServerState.RUNNING

    def _run_in_thread(self) -> None:
        try:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._loop.run_until_complete(self._server.serve())
        except Exception as e:
            logger.exception("API server thread error: %s", e)
            self._state = APIServerState.ERROR
        finally:
            if self._loop:
                self._loop.close()
            self._state = APIServerState.STOPPED

    def stop(self) -> bool:
        """Stop a server started in the background."""
        if self._state != APIServerState.RUNNING:
            logger.warning("API server is not running")
            return False

        self._state = APIServerState.STOPPING
        if self._server:
            self._server.should_exit = True
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._state = APIServerState.STOPPED
        self._server = None
        self._thread = None
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "host": self.host,
            "port": self.port,
            "url": f"http://{self.host}:{self.port}" if self._state == APIServerState.RUNNING else None,
        }


def create_app(config_bundle: Optional[ConfigurationBundle] = None) -> Starlette:
    """Build the application for an externally managed ASGI server."""
    bundle = config_bundle or load_runtime_configuration()
    return VaultAPIServer(bundle).create_app()


def main() -> None:
    """Entry point for ``vaultsync-server``."""
    bundle = load_runtime_configuration()
    provision_data_dir(bundle.data_dir)
    if bundle.status == "missing":
        bundle = load_runtime_configuration(bundle.data_dir)

    logging_cfg = bundle.section("logging")
    bundle.log_path = setup_logging(
        bundle.data_dir,
        logging_cfg.get("level", "INFO"),
        structured=bool(logging_cfg.get("structured", True)),
    )
    for diag in bundle.diagnostics:
        if diag.level != "info":
            logger.warning("[config] %s", diag.message)

    server = VaultAPIServer(bundle)
    logger.info("Serving vaults from %s", bundle.data_dir)
    server.start(blocking=True)


__all__ = ["APIServerState", "BearerAuthMiddleware", "VaultAPIServer", "create_app", "main"]
