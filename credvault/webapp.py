"""
FastAPI application factory.

The database connection, cipher, store and reconciler are built once in the
lifespan hook, stored on app.state and handed to routes through dependencies.
The connection is closed on shutdown.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from . import api, config
from .crypto import CryptoManager
from .errors import CredVaultError, DecryptionError, StoreError
from .reconciler import ImportReconciler
from .storage import CredentialStore, Database

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "data": None, "message": message})


def create_app(settings: Optional[config.Settings] = None) -> FastAPI:
    settings = settings or config.Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        key = config.get_encryption_key(settings)
        crypto = CryptoManager.from_settings(settings)
        if not crypto.validate_key(key):
            raise DecryptionError("Configured encryption key failed validation")

        db = Database(settings.DATABASE_PATH)
        db.connect()
        store = CredentialStore(db, crypto, key)

        app.state.settings = settings
        app.state.crypto = crypto
        app.state.store = store
        app.state.reconciler = ImportReconciler(store)
        logger.info("Credential API starting up")
        try:
            yield
        finally:
            db.close()
            logger.info("Credential API shutting down")

    app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION, lifespan=lifespan)

    raw_origins = settings.ALLOWED_ORIGINS.strip()
    origins = ["*"] if raw_origins == "*" else [o.strip() for o in raw_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CredVaultError)
    async def handle_credvault_error(request: Request, exc: CredVaultError) -> JSONResponse:
        if isinstance(exc, StoreError) or exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=exc)
        return _error(exc.status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
        )
        return _error(400, f"Invalid request: {details}")

    app.include_router(api.router)
    return app
