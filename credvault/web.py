from datetime import datetime, timedelta, timezone
import json
import secrets
import time
import uuid

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from credvault.core.backup import BackupCodec
from credvault.core.config import SESSION_MINUTES
from credvault.core.csv_io import CsvImportEngine, CsvImportOptions, DuplicatePolicy, export_entries_csv
from credvault.core.db import Store
from credvault.core.entries import (
    CommonPasswordSecrets,
    CommonPasswordSummary,
    EntryType,
    PasswordEntry,
    PasswordEntrySecrets,
)
from credvault.core.errors import (
    AlreadyInitialized,
    Canceled,
    DecryptionFailed,
    DuplicateName,
    EmptyInput,
    InvalidArgument,
    NotEmpty,
    NotFound,
    NotInitialized,
    NotUnlocked,
    StoreUnavailable,
    UnrecognizedFormat,
    VaultError,
    WrongPassphraseOrCorrupt,
    WrongPassword,
)
from credvault.core.logging import logger
from credvault.core.repository import Repository
from credvault.core.vault import Vault

SESSION_DURATION = timedelta(minutes=SESSION_MINUTES)

MAX_UNLOCK_ATTEMPTS = 5
UNLOCK_WINDOW_SECONDS = 300  # 5 minutes

# most specific classes first
ERROR_STATUS = [
    (NotFound, 404),
    (NotInitialized, 409),
    (AlreadyInitialized, 409),
    (WrongPassword, 401),
    (WrongPassphraseOrCorrupt, 400),
    (NotUnlocked, 423),
    (EmptyInput, 400),
    (InvalidArgument, 400),
    (NotEmpty, 409),
    (DuplicateName, 409),
    (DecryptionFailed, 422),
    (UnrecognizedFormat, 400),
    (Canceled, 409),
    (StoreUnavailable, 503),
]


def status_for(exc: VaultError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


# -----------------------------
# Schemas
# -----------------------------
class MasterPassword(BaseModel):
    master_password: str


class NewMasterPassword(BaseModel):
    new_password: str


class EntryIn(BaseModel):
    title: str
    username: str = ""
    password: str
    url: str = ""
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    notes: str = ""
    group_id: int = 1
    entry_type: int = 0


class EntryOut(BaseModel):
    id: int
    group_id: int
    entry_type: int
    type_label: str
    title: str
    username: str
    url: str
    category: str
    tags: list[str]
    created_at: int
    updated_at: int


class EntryDetail(EntryOut):
    password: str
    notes: str


class MoveIn(BaseModel):
    group_id: int


class GroupIn(BaseModel):
    name: str
    parent_id: int = 1


class GroupRename(BaseModel):
    name: str


class GroupOut(BaseModel):
    id: int
    parent_id: int
    name: str


class CommonPasswordIn(BaseModel):
    name: str
    password: str
    notes: str = ""


class CommonPasswordOut(BaseModel):
    id: int
    name: str
    created_at: int
    updated_at: int


class CommonPasswordDetail(CommonPasswordOut):
    password: str
    notes: str


class CsvImportIn(BaseModel):
    content: str
    group_id: int = 1
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.SKIP
    create_groups_from_category_path: bool = False
    default_entry_type: int = 0


class CsvImportOut(BaseModel):
    format: str
    inserted: int
    updated: int
    skipped_duplicates: int
    skipped_invalid: int
    warnings: list[str]


class BackupExportIn(BaseModel):
    passphrase: str


class BackupImportIn(BaseModel):
    backup: dict
    passphrase: str


def entry_out(e: PasswordEntry) -> EntryOut:
    return EntryOut(
        id=e.id,
        group_id=e.group_id,
        entry_type=int(e.type),
        type_label=e.type.label,
        title=e.title,
        username=e.username,
        url=e.url,
        category=e.category,
        tags=e.tags,
        created_at=e.created_at,
        updated_at=e.updated_at,
    )


def entry_secrets(data: EntryIn, entry_id: int = 0) -> PasswordEntrySecrets:
    return PasswordEntrySecrets(
        entry=PasswordEntry(
            id=entry_id,
            group_id=data.group_id,
            type=EntryType.from_int(data.entry_type),
            title=data.title,
            username=data.username,
            url=data.url,
            category=data.category,
            tags=data.tags,
        ),
        password=data.password,
        notes=data.notes,
    )


def common_out(c: CommonPasswordSummary) -> CommonPasswordOut:
    return CommonPasswordOut(id=c.id, name=c.name, created_at=c.created_at, updated_at=c.updated_at)


# -----------------------------
# Application state
# -----------------------------
class VaultServices:
    """The single vault this process serves, plus its browser sessions."""

    def __init__(self, store: Store):
        self.store = store
        self.vault = Vault(store)
        self.repo = Repository(self.vault)
        self.sessions: dict[str, dict] = {}
        # unlock_attempts[ip] = [timestamps]
        self.unlock_attempts: dict[str, list[float]] = {}

    def lock(self):
        self.vault.lock()
        self.sessions.clear()


def get_client_ip(request: Request) -> str:
    client = request.client
    return client.host if client else "unknown"


def create_app(store: Store | None = None) -> FastAPI:
    app = FastAPI(title="Credential Vault")
    app.state.services = VaultServices(store) if store is not None else None

    # Security headers
    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        response = await call_next(request)

        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "object-src 'none'; "
            "base-uri 'none'; "
            "frame-ancestors 'none'; "
            "form-action 'self';"
        )
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"

        return response

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        status = status_for(exc)
        if status >= 500:
            logger.error("Request failed path=%s error=%s", request.url.path, exc)
        return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})

    @app.on_event("startup")
    def startup():
        if app.state.services is None:
            app.state.services = VaultServices(Store.open())

    # -----------------------------
    # Helpers
    # -----------------------------
    def services(request: Request) -> VaultServices:
        if request.app.state.services is None:
            raise StoreUnavailable("Vault database is not open")
        return request.app.state.services

    def get_session(request: Request, svc: VaultServices = Depends(services)):
        session_id = request.cookies.get("session_id")
        if not session_id or session_id not in svc.sessions:
            raise HTTPException(401, "Not logged in")

        s = svc.sessions[session_id]
        now = datetime.now(timezone.utc)
        if s["expires"] < now:
            logger.info("Session idle timeout; locking vault")
            svc.lock()
            raise HTTPException(401, "Session expired")

        if not svc.vault.is_unlocked:
            del svc.sessions[session_id]
            raise HTTPException(401, "Vault is locked")

        # activity keeps the vault open
        s["expires"] = now + SESSION_DURATION
        return s

    def require_csrf(
        request: Request,
        session=Depends(get_session),
        csrf_header: str | None = Header(default=None, alias="X-CSRF-Token"),
    ):
        if not csrf_header or not secrets.compare_digest(csrf_header, session["csrf_token"]):
            logger.warning("CSRF validation failed ip=%s", get_client_ip(request))
            raise HTTPException(status_code=403, detail="CSRF token invalid")
        return session

    def rate_limit_unlock(svc: VaultServices, ip: str):
        now = time.time()
        attempts = [t for t in svc.unlock_attempts.get(ip, []) if now - t < UNLOCK_WINDOW_SECONDS]
        attempts.append(now)
        svc.unlock_attempts[ip] = attempts

        if len(attempts) > MAX_UNLOCK_ATTEMPTS:
            logger.warning("Rate limit exceeded ip=%s attempts=%s", ip, len(attempts))
            raise HTTPException(
                status_code=429,
                detail="Too many unlock attempts. Please try again later.",
            )

    def open_session(svc: VaultServices, response: Response) -> dict:
        session_id = uuid.uuid4().hex
        csrf_token = secrets.token_hex(32)
        svc.sessions[session_id] = {
            "csrf_token": csrf_token,
            "expires": datetime.now(timezone.utc) + SESSION_DURATION,
        }

        # secure cookie, HTTPS only
        response.set_cookie(
            "session_id",
            value=session_id,
            httponly=True,
            secure=True,
            samesite="strict",
            max_age=int(SESSION_DURATION.total_seconds()),
            path="/",
        )
        return {"message": "Unlocked", "csrf_token": csrf_token}

    # -----------------------------
    # Vault endpoints
    # -----------------------------
    @app.get("/vault/status")
    def vault_status(svc: VaultServices = Depends(services)):
        return {
            "state": svc.vault.state.value,
            "initialized": svc.vault.is_initialized,
            "unlocked": svc.vault.is_unlocked,
        }

    @app.post("/vault/create")
    def vault_create(req: MasterPassword, response: Response, request: Request,
                     svc: VaultServices = Depends(services)):
        svc.vault.create_vault(req.master_password)
        logger.info("Vault created via web ip=%s", get_client_ip(request))
        return open_session(svc, response)

    @app.post("/vault/unlock")
    def vault_unlock(req: MasterPassword, response: Response, request: Request,
                     svc: VaultServices = Depends(services)):
        ip = get_client_ip(request)
        rate_limit_unlock(svc, ip)

        svc.vault.unlock(req.master_password)

        svc.unlock_attempts[ip] = []
        logger.info("Unlock successful ip=%s", ip)
        return open_session(svc, response)

    @app.post("/vault/lock")
    def vault_lock(response: Response, svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        svc.lock()
        response.delete_cookie("session_id")
        return {"message": "Locked"}

    @app.post("/vault/master-password")
    def vault_change_password(req: NewMasterPassword, svc: VaultServices = Depends(services),
                              session=Depends(require_csrf)):
        svc.vault.change_master_password(req.new_password)
        return {"message": "Master password changed"}

    # -----------------------------
    # Entry endpoints
    # -----------------------------
    @app.get("/entries", response_model=list[EntryOut])
    def list_entries_api(group_id: int | None = None, svc: VaultServices = Depends(services),
                         session=Depends(get_session)):
        if group_id is not None:
            rows = svc.repo.list_entries_in_group(group_id)
        else:
            rows = svc.repo.list_entries()
        return [entry_out(e) for e in rows]

    @app.get("/entries/{entry_id}", response_model=EntryDetail)
    def get_entry_api(entry_id: int, svc: VaultServices = Depends(services), session=Depends(get_session)):
        s = svc.repo.load_entry(entry_id)
        return EntryDetail(**entry_out(s.entry).model_dump(), password=s.password, notes=s.notes)

    @app.post("/entries", response_model=EntryOut, status_code=201)
    def create_entry_api(data: EntryIn, svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        entry_id = svc.repo.add_entry(entry_secrets(data))
        return entry_out(svc.repo.load_entry(entry_id).entry)

    @app.put("/entries/{entry_id}", response_model=EntryOut)
    def update_entry_api(entry_id: int, data: EntryIn, svc: VaultServices = Depends(services),
                         session=Depends(require_csrf)):
        svc.repo.update_entry(entry_secrets(data, entry_id))
        return entry_out(svc.repo.load_entry(entry_id).entry)

    @app.post("/entries/{entry_id}/move", status_code=204)
    def move_entry_api(entry_id: int, data: MoveIn, svc: VaultServices = Depends(services),
                       session=Depends(require_csrf)):
        svc.repo.move_entry_to_group(entry_id, data.group_id)
        return Response(status_code=204)

    @app.delete("/entries/{entry_id}", status_code=204)
    def delete_entry_api(entry_id: int, svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        if not svc.repo.delete_entry(entry_id):
            raise HTTPException(404, "Not found")
        # FastAPI with status_code=204 expects an empty response
        return Response(status_code=204)

    # -----------------------------
    # Group / tag / category endpoints
    # -----------------------------
    @app.get("/groups", response_model=list[GroupOut])
    def list_groups_api(svc: VaultServices = Depends(services), session=Depends(get_session)):
        return [GroupOut(id=g.id, parent_id=g.parent_id, name=g.name) for g in svc.repo.list_groups()]

    @app.post("/groups", response_model=GroupOut, status_code=201)
    def create_group_api(data: GroupIn, svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        group_id = svc.repo.create_group(data.parent_id, data.name)
        g = svc.repo.group_tree().get(group_id)
        return GroupOut(id=g.id, parent_id=g.parent_id, name=g.name)

    @app.patch("/groups/{group_id}", status_code=204)
    def rename_group_api(group_id: int, data: GroupRename, svc: VaultServices = Depends(services),
                         session=Depends(require_csrf)):
        svc.repo.rename_group(group_id, data.name)
        return Response(status_code=204)

    @app.delete("/groups/{group_id}", status_code=204)
    def delete_group_api(group_id: int, svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        svc.repo.delete_group(group_id)
        return Response(status_code=204)

    @app.get("/tags", response_model=list[str])
    def list_tags_api(svc: VaultServices = Depends(services), session=Depends(get_session)):
        return svc.repo.list_all_tags()

    @app.get("/categories", response_model=list[str])
    def list_categories_api(svc: VaultServices = Depends(services), session=Depends(get_session)):
        return svc.repo.list_categories()

    # -----------------------------
    # Common password endpoints
    # -----------------------------
    @app.get("/common-passwords", response_model=list[CommonPasswordOut])
    def list_common_api(svc: VaultServices = Depends(services), session=Depends(get_session)):
        return [common_out(c) for c in svc.repo.list_common_passwords()]

    @app.get("/common-passwords/{item_id}", response_model=CommonPasswordDetail)
    def get_common_api(item_id: int, svc: VaultServices = Depends(services), session=Depends(get_session)):
        c = svc.repo.load_common_password(item_id)
        return CommonPasswordDetail(**common_out(c.item).model_dump(), password=c.password, notes=c.notes)

    @app.post("/common-passwords", response_model=CommonPasswordOut, status_code=201)
    def create_common_api(data: CommonPasswordIn, svc: VaultServices = Depends(services),
                          session=Depends(require_csrf)):
        item_id = svc.repo.add_common_password(
            CommonPasswordSecrets(item=CommonPasswordSummary(name=data.name), password=data.password, notes=data.notes)
        )
        return common_out(svc.repo.load_common_password(item_id).item)

    @app.put("/common-passwords/{item_id}", response_model=CommonPasswordOut)
    def update_common_api(item_id: int, data: CommonPasswordIn, svc: VaultServices = Depends(services),
                          session=Depends(require_csrf)):
        svc.repo.update_common_password(
            CommonPasswordSecrets(
                item=CommonPasswordSummary(id=item_id, name=data.name), password=data.password, notes=data.notes
            )
        )
        return common_out(svc.repo.load_common_password(item_id).item)

    @app.delete("/common-passwords/{item_id}", status_code=204)
    def delete_common_api(item_id: int, svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        if not svc.repo.delete_common_password(item_id):
            raise HTTPException(404, "Not found")
        return Response(status_code=204)

    # -----------------------------
    # Import / export endpoints
    # -----------------------------
    @app.post("/import/csv", response_model=CsvImportOut)
    def import_csv_api(data: CsvImportIn, svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        options = CsvImportOptions(
            duplicate_policy=data.duplicate_policy,
            create_groups_from_category_path=data.create_groups_from_category_path,
            default_entry_type=EntryType.from_int(data.default_entry_type),
        )
        result = CsvImportEngine(
            svc.repo, data.content.encode("utf-8"), base_group_id=data.group_id, options=options
        ).execute()
        return CsvImportOut(
            format=result.format.value,
            inserted=result.inserted,
            updated=result.updated,
            skipped_duplicates=result.skipped_duplicates,
            skipped_invalid=result.skipped_invalid,
            warnings=result.warnings,
        )

    @app.get("/export/csv")
    def export_csv_api(svc: VaultServices = Depends(services), session=Depends(require_csrf)):
        return Response(
            content=export_entries_csv(svc.repo),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="credentials.csv"'},
        )

    @app.post("/backup/export")
    def backup_export_api(data: BackupExportIn, svc: VaultServices = Depends(services),
                          session=Depends(require_csrf)):
        return Response(content=BackupCodec(svc.repo).export_backup(data.passphrase), media_type="application/json")

    @app.post("/backup/import")
    def backup_import_api(data: BackupImportIn, svc: VaultServices = Depends(services),
                          session=Depends(require_csrf)):
        count = BackupCodec(svc.repo).import_backup(json.dumps(data.backup), data.passphrase)
        return {"imported": count}

    return app


app = create_app()
