from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from exceptions import (
    ActivationError,
    AlreadyUsedError,
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from key_issuer import KeyIssuer
from logger import get_logger
from models import (
    ActivationKey,
    ClientInfo,
    DeleteKeyResponse,
    ErrorResponse,
    HealthCheckResponse,
    IssueKeyRequest,
    IssueKeyResponse,
    KeyListResponse,
    ResetKeyResponse,
    StoreUpdateRequest,
    StoreUpdateResponse,
)
from store import KeyStore, SQLKeyStore, decode_changes

__version__ = "1.0.0"

logger = get_logger("activation.api")

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    AlreadyUsedError: 409,
    StoreUnavailableError: 503,
}


def create_app(store: Optional[KeyStore] = None) -> FastAPI:
    """
    Build the admin service.

    Served with the factory flag so importing this module opens no database:

        uvicorn main:create_app --factory --host 0.0.0.0 --port 8000
    """
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.store.close()

    app = FastAPI(
        title="Activation Key Service",
        description="Issues, resets and deletes activation keys, and exposes the shared key store",
        version=__version__,
        lifespan=lifespan
    )
    app.state.store = store or SQLKeyStore()
    app.state.issuer = KeyIssuer(app.state.store)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ActivationError)
    async def activation_error_handler(request: Request, exc: ActivationError):
        status_code = ERROR_STATUS.get(type(exc), 400)
        body = ErrorResponse(error=type(exc).__name__, message=exc.message, code=exc.code)
        if isinstance(exc, AlreadyUsedError):
            body.device_id = exc.device_id
            body.activated_at = exc.activated_at
            body.expires_at = exc.expires_at
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", by_alias=True))

    def get_issuer(request: Request) -> KeyIssuer:
        return request.app.state.issuer

    def get_store(request: Request) -> KeyStore:
        return request.app.state.store

    # Admin endpoints
    @app.post("/api/keys", response_model=IssueKeyResponse)
    async def issue_key(request: IssueKeyRequest, issuer: KeyIssuer = Depends(get_issuer)):
        """
        Issue a new activation key.

        The key starts unused; its creation time is stamped by the store.
        """
        client = ClientInfo(name=request.client_name, phone=request.client_phone, notes=request.client_notes)
        code = await issuer.issue(client, request.duration_days)
        key = await issuer.store.get(code)
        return IssueKeyResponse(code=code, key=key)

    @app.get("/api/keys", response_model=KeyListResponse)
    async def list_keys(status: Optional[str] = None, issuer: KeyIssuer = Depends(get_issuer)):
        """
        List keys newest first. Activated keys past their expiry show as expired.
        """
        keys = await issuer.list_all(status)
        return KeyListResponse(count=len(keys), keys=keys)

    @app.post("/api/keys/{code}/reset", response_model=ResetKeyResponse)
    async def reset_key(code: str, issuer: KeyIssuer = Depends(get_issuer)):
        """
        Unbind a key so it can be activated on another device.
        """
        key = await issuer.reset(code)
        return ResetKeyResponse(success=True, key=key)

    @app.delete("/api/keys/{code}", response_model=DeleteKeyResponse)
    async def delete_key(code: str, issuer: KeyIssuer = Depends(get_issuer)):
        await issuer.delete(code)
        return DeleteKeyResponse(success=True, code=code)

    # Store bridge used by HTTPKeyStore
    @app.get("/api/store/keys", response_model=List[ActivationKey])
    async def store_list(store: KeyStore = Depends(get_store)):
        return await store.list_all()

    @app.get("/api/store/keys/{code}", response_model=ActivationKey)
    async def store_get(code: str, store: KeyStore = Depends(get_store)):
        key = await store.get(code)
        if key is None:
            raise NotFoundError("Activation code not found", code)
        return key

    @app.put("/api/store/keys/{code}", response_model=StoreUpdateResponse)
    async def store_set(code: str, key: ActivationKey, store: KeyStore = Depends(get_store)):
        if key.code != code:
            raise ValidationError("Record code does not match the path", code)
        await store.set(key)
        return StoreUpdateResponse(matched=True)

    @app.patch("/api/store/keys/{code}", response_model=StoreUpdateResponse)
    async def store_update(code: str, request: StoreUpdateRequest, store: KeyStore = Depends(get_store)):
        matched = await store.update(code, decode_changes(request.changes), decode_changes(request.expect))
        return StoreUpdateResponse(matched=matched)

    @app.delete("/api/store/keys/{code}", response_model=StoreUpdateResponse)
    async def store_remove(code: str, store: KeyStore = Depends(get_store)):
        await store.remove(code)
        return StoreUpdateResponse(matched=True)

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check():
        """
        Health check endpoint for container orchestration.
        """
        return HealthCheckResponse(status="healthy", service="activation-keys", version=__version__)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())
