"""
HTTP API routes.

Every response uses the envelope {"success": bool, "data": ..., "message": str}.
Records carry their password ciphertext only. The decrypt endpoint is the
single place plaintext leaves the service, and only against a key supplied by
the caller; the server's own key is never used there.
"""

import logging
import os
import tempfile
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import JSONResponse

from . import config
from .browser_import import source_from_path
from .crypto import CryptoManager
from .errors import DecryptionError, ValidationError
from .models import CandidateRecord
from .reconciler import ImportReconciler
from .storage import CredentialStore
from .utils import log_action

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_CHUNK_SIZE = 64 * 1024


class CredentialPayload(BaseModel):
    """Body of create and update requests. Required fields are checked by the store."""
    name: str = ""
    url: str = ""
    username: str = ""
    password: str = ""
    note: str = ""
    source: Optional[str] = None


class DecryptPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    encrypted_password: str = Field("", alias="encryptedPassword")
    key: str = ""


def get_settings(request: Request) -> config.Settings:
    return request.app.state.settings


def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def get_reconciler(request: Request) -> ImportReconciler:
    return request.app.state.reconciler


def get_crypto(request: Request) -> CryptoManager:
    return request.app.state.crypto


def _ok(data: Any = None, message: str = "") -> Dict[str, Any]:
    return {"success": True, "data": data, "message": message}


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/passwords")
def list_passwords(
    search: str = "",
    page: int = 1,
    limit: Optional[int] = None,
    store: CredentialStore = Depends(get_store),
    settings: config.Settings = Depends(get_settings),
) -> Dict[str, Any]:
    limit = settings.DEFAULT_PAGE_SIZE if limit is None else limit
    if limit > settings.MAX_PAGE_SIZE:
        raise ValidationError(f"limit must not exceed {settings.MAX_PAGE_SIZE}")

    rows = store.query_page(search, page, limit)
    body = _ok([r.to_dict() for r in rows])
    body.update(total=store.count_matching(search), page=page, limit=limit)
    return body


@router.get("/api/passwords/{credential_id}")
def get_password(credential_id: int, store: CredentialStore = Depends(get_store)) -> Dict[str, Any]:
    return _ok(store.get_by_id(credential_id).to_dict())


@router.post("/api/passwords", status_code=201)
def create_password(payload: CredentialPayload, store: CredentialStore = Depends(get_store)) -> Dict[str, Any]:
    candidate = CandidateRecord(
        name=payload.name,
        url=payload.url,
        username=payload.username,
        password=payload.password,
        note=payload.note,
        source=payload.source or config.DEFAULT_SOURCE,
    )
    credential = store.insert(candidate)
    log_action("CREATE", f"id={credential.id} name={credential.name} source={credential.source}")
    return _ok(credential.to_dict(), "Credential created")


@router.put("/api/passwords/{credential_id}")
def update_password(credential_id: int, payload: CredentialPayload,
                    store: CredentialStore = Depends(get_store)) -> Dict[str, Any]:
    credential = store.update_full(credential_id, payload.model_dump())
    log_action("UPDATE", f"id={credential.id} name={credential.name} source={credential.source}")
    return _ok(credential.to_dict(), "Credential updated")


@router.delete("/api/passwords/{credential_id}")
def delete_password(credential_id: int, store: CredentialStore = Depends(get_store)) -> Dict[str, Any]:
    store.delete_by_id(credential_id)
    log_action("DELETE", f"id={credential_id}")
    return _ok({"id": credential_id}, "Credential deleted")


@router.get("/api/stats")
def stats(store: CredentialStore = Depends(get_store)) -> Dict[str, Any]:
    data = store.stats()
    data["by_email_domain"] = store.email_domain_stats()
    return _ok(data)


@router.post("/api/import")
def import_passwords(
    file: UploadFile = File(...),
    source: Optional[str] = Form(None),
    reconciler: ImportReconciler = Depends(get_reconciler),
    settings: config.Settings = Depends(get_settings),
) -> Dict[str, Any]:
    filename = os.path.basename(file.filename or "")
    if not filename.lower().endswith(config.CSV_EXTENSION):
        raise ValidationError("Only CSV files can be imported")
    source = source or source_from_path(filename)

    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    with tempfile.NamedTemporaryFile(dir=settings.UPLOAD_DIR, suffix=config.CSV_EXTENSION, delete=False) as tmp:
        tmp_path = tmp.name
    try:
        _save_upload(file, tmp_path, settings.MAX_UPLOAD_SIZE)
        result = reconciler.import_file(tmp_path, source)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

    data = {
        "inserted": result.inserted,
        "updated": result.updated,
        "skipped": result.skipped,
        "source": result.source,
        "file_name": filename,
    }
    message = (f"Import complete: {result.inserted} inserted, {result.updated} updated, "
               f"{result.skipped} skipped")
    return _ok(data, message)


def _save_upload(upload: UploadFile, path: str, max_size: int) -> None:
    written = 0
    with open(path, 'wb') as out:
        while True:
            chunk = upload.file.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_size:
                raise ValidationError(f"File exceeds the maximum upload size of {max_size} bytes")
            out.write(chunk)


@router.post("/api/decrypt")
def decrypt_password(payload: DecryptPayload, crypto: CryptoManager = Depends(get_crypto)):
    if not payload.encrypted_password or not payload.key:
        raise ValidationError("Both encrypted_password and key are required")

    try:
        plaintext = crypto.decrypt_password(payload.encrypted_password, payload.key, cache=False)
    except DecryptionError as e:
        log_action("DECRYPT_FAILED", str(e))
        return JSONResponse(
            status_code=400,
            content={"success": False, "data": None, "message": "Wrong key or malformed ciphertext"},
        )

    log_action("DECRYPT", "caller-supplied key")
    return _ok({"password": plaintext})
