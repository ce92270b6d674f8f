"""
Vaultbox HTTP service - FastAPI front end for the vault core.

Exposes unlock/lock/status and CRUD on secrets. Every secret route is
gated on the vault being unlocked, and vault errors are mapped to HTTP
statuses in one place:

    ValidationError   -> 400
    VaultLockedError  -> 401
    NotFoundError     -> 404
    anything else     -> 500 (details logged, never returned)

Authentication:
    Set VAULT_API_KEY to require a Bearer token on every /api call.
    If not set, the API is open (only bind it to localhost in that case).
"""

import hmac
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from loguru import logger
from pydantic import BaseModel

from .config import VaultSettings, load_settings
from .errors import ErrorKind, VaultError, VaultLockedError
from .manager import SecretsManager
from .models import CreateSecretRequest, UpdateSecretRequest
from .state import VaultState
from .store import SecretStore, SQLiteSecretStore

ERROR_STATUS = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.VAULT_LOCKED: 401,
    ErrorKind.NOT_FOUND: 404,
}


class UnlockRequest(BaseModel):
    master_password: str = ""


class SecretPayload(BaseModel):
    title: str = ""
    type: str = ""
    value: str = ""


def get_vault(request: Request) -> VaultState:
    return request.app.state.vault


def get_secrets(request: Request) -> SecretsManager:
    return request.app.state.secrets


async def verify_api_key(request: Request):
    """Verify Bearer token matches the configured API key. Skipped if unset."""
    api_key = request.app.state.settings.api_key
    if not api_key:
        return
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer ") or not hmac.compare_digest(
        auth[7:].encode(), api_key.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def require_unlocked(vault: VaultState = Depends(get_vault)):
    """Authorization gate for every secret route."""
    if not vault.is_unlocked():
        raise VaultLockedError("Vault is locked")


async def vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.kind)
    if status_code is None:
        logger.error(
            f"{exc.kind.value} error on {request.method} {request.url.path}: "
            f"{exc.message} {exc.context}"
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error"},
        )
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind.value, "message": exc.message},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": ErrorKind.VALIDATION.value, "message": "Invalid request body"},
    )


# ── Vault lifecycle ────────────────────────────────────────────────

vault_router = APIRouter(prefix="/api", dependencies=[Depends(verify_api_key)])


@vault_router.post("/unlock")
def unlock(body: UnlockRequest, vault: VaultState = Depends(get_vault)):
    vault.unlock(body.master_password)
    return {"message": "Vault unlocked successfully"}


@vault_router.post("/lock")
def lock(vault: VaultState = Depends(get_vault)):
    vault.lock()
    return {"message": "Vault locked successfully"}


@vault_router.get("/status")
def status(vault: VaultState = Depends(get_vault)):
    return vault.get_status().to_dict()


# ── Secrets ────────────────────────────────────────────────────────

secrets_router = APIRouter(
    prefix="/api/secrets",
    dependencies=[Depends(verify_api_key), Depends(require_unlocked)],
)


@secrets_router.get("")
def list_secrets(secrets: SecretsManager = Depends(get_secrets)):
    return [s.to_dict() for s in secrets.list()]


@secrets_router.post("", status_code=201)
def create_secret(body: SecretPayload, secrets: SecretsManager = Depends(get_secrets)):
    created = secrets.create(
        CreateSecretRequest(title=body.title, type=body.type, value=body.value)
    )
    return created.to_dict()


@secrets_router.get("/{secret_id}")
def get_secret(secret_id: str, secrets: SecretsManager = Depends(get_secrets)):
    return secrets.get(secret_id).to_dict()


@secrets_router.put("/{secret_id}")
def update_secret(
    secret_id: str,
    body: SecretPayload,
    secrets: SecretsManager = Depends(get_secrets),
):
    updated = secrets.update(
        secret_id,
        UpdateSecretRequest(title=body.title, type=body.type, value=body.value),
    )
    return updated.to_dict()


@secrets_router.delete("/{secret_id}", status_code=204)
def delete_secret(secret_id: str, secrets: SecretsManager = Depends(get_secrets)):
    secrets.delete(secret_id)
    return Response(status_code=204)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Zero the key before the process goes away.
    app.state.vault.close()
    logger.info("Vault service stopped")


def create_app(
    settings: VaultSettings | None = None,
    vault: VaultState | None = None,
    store: SecretStore | None = None,
) -> FastAPI:
    """
    Build the FastAPI app and wire one VaultState, store and manager into it.

    Args:
        settings: Process settings (loaded from env/config file if omitted).
        vault: Pre-built vault state, mainly for tests.
        store: Pre-built secret store, mainly for tests.
    """
    settings = settings or load_settings()
    if vault is None:
        vault = VaultState(
            auto_lock_after=settings.auto_lock_after,
            poll_interval=settings.poll_interval_seconds,
        )
    if store is None:
        store = SQLiteSecretStore(settings.db_path)

    app = FastAPI(title="Vaultbox", lifespan=lifespan)
    app.state.settings = settings
    app.state.vault = vault
    app.state.secrets = SecretsManager(vault, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Accept", "Authorization", "Content-Type"],
        max_age=300,
    )
    app.add_exception_handler(VaultError, vault_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(vault_router)
    app.include_router(secrets_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def main() -> None:
    settings = load_settings()
    if not settings.api_key:
        logger.warning("VAULT_API_KEY is not set; the API accepts unauthenticated requests")
    logger.info(f"Starting vault service on {settings.host}:{settings.port}")
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
