import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

from fastapi import Body, FastAPI, File, Header, Request, Response, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .errors import AppError
from .persistence import get_persistence
from .schemas import (
    ApiErrorDetail,
    ApiErrorPayload,
    ApiErrorResponse,
    BackupPayload,
    BackupRunResponse,
    BackupValidateResponse,
    HealthResponse,
    ImportSummary,
)
from .services.backup import validate_backup_payload

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Household Budget API",
    version="0.1.0",
    description="Backup export, validation and import for household budgets.",
)

BACKUP_DIR = Path(settings.backup_dir)
BACKUP_FILE_PREFIX = "budget-backup-"
persistence = get_persistence()


def build_error_response(details: list[ApiErrorDetail], message: str = "Invalid request payload") -> JSONResponse:
    payload = ApiErrorResponse(
        error=ApiErrorPayload(code="VALIDATION_ERROR", message=message, details=details)
    )
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: list[ApiErrorDetail] = []
    for err in exc.errors():
        loc = ".".join(str(item) for item in err.get("loc", []) if item != "body")
        details.append(ApiErrorDetail(field=loc or "body", message=err.get("msg", "validation error")))
    return build_error_response(details)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.warning("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("%s %s store error", request.method, request.url.path, exc_info=exc)
    payload = ApiErrorResponse(error=ApiErrorPayload(code="STORE_ERROR", message="Database operation failed"))
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=payload.model_dump())


def _resolve_user(x_user_id: Optional[str]) -> str:
    if not x_user_id:
        return settings.default_user_id
    try:
        return str(UUID(x_user_id))
    except ValueError as exc:
        message = "X-User-Id header must be a UUID"
        raise AppError(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            message,
            "VALIDATION_ERROR",
            [ApiErrorDetail(field="X-User-Id", message=message)],
        ) from exc


def _require_budget(x_user_id: Optional[str]) -> tuple[str, int]:
    user_id = _resolve_user(x_user_id)
    budget = persistence.get_or_create_default_budget(user_id)
    return user_id, budget["id"]


def _user_backup_dir(user_id: str) -> Path:
    return BACKUP_DIR / user_id


def _backup_file_path(user_id: str, ts: Optional[datetime] = None) -> Path:
    current = ts or datetime.now(timezone.utc)
    stamp = current.strftime("%Y%m%d_%H%M%S_%f")
    return _user_backup_dir(user_id) / f"{BACKUP_FILE_PREFIX}{stamp}.json"


def _create_backup_file(user_id: str, budget_id: int) -> tuple[Path, datetime]:
    ts = datetime.now(timezone.utc)
    file_path = _backup_file_path(user_id, ts)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    document = persistence.export_backup(user_id, budget_id)
    file_path.write_text(document.model_dump_json(indent=2), encoding="utf-8")
    return file_path, ts


def _cleanup_old_backups(user_id: str, retention_days: int) -> list[Path]:
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    removed: list[Path] = []
    for file_path in _user_backup_dir(user_id).glob(f"{BACKUP_FILE_PREFIX}*.json"):
        mtime = datetime.fromtimestamp(file_path.stat().st_mtime, tz=timezone.utc)
        if mtime < cutoff:
            file_path.unlink(missing_ok=True)
            removed.append(file_path)
    if removed:
        logger.info("Removed %d backup files older than %d days for user %s", len(removed), retention_days, user_id)
    return removed


@app.get("/api/v1/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/api/v1/backup/export", responses={200: {"model": BackupPayload}})
def export_backup(x_user_id: Optional[str] = Header(default=None)) -> Response:
    user_id, budget_id = _require_budget(x_user_id)
    document = persistence.export_backup(user_id, budget_id)
    return Response(content=document.model_dump_json(), media_type="application/json")


@app.get("/api/v1/backup/download")
def download_backup(x_user_id: Optional[str] = Header(default=None)) -> Response:
    user_id, budget_id = _require_budget(x_user_id)
    document = persistence.export_backup(user_id, budget_id)
    filename = f"{BACKUP_FILE_PREFIX}{datetime.now(timezone.utc).date().isoformat()}.json"
    return Response(
        content=document.model_dump_json(indent=2).encode("utf-8"),
        media_type="application/json",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/api/v1/backup/counts", response_model=ImportSummary)
def backup_counts(x_user_id: Optional[str] = Header(default=None)) -> ImportSummary:
    user_id, budget_id = _require_budget(x_user_id)
    return persistence.count_entities(user_id, budget_id)


@app.post("/api/v1/backup/validate", response_model=BackupValidateResponse)
def validate_backup(payload: Any = Body(default=None)) -> BackupValidateResponse:
    document = validate_backup_payload(payload)
    return BackupValidateResponse(valid=True, counts=ImportSummary.from_payload(document))


@app.post("/api/v1/backup/import", response_model=ImportSummary, status_code=201)
def import_backup(
    payload: Any = Body(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> ImportSummary:
    user_id, budget_id = _require_budget(x_user_id)
    return persistence.import_backup(user_id, budget_id, payload)


@app.post("/api/v1/backup/import-file", response_model=ImportSummary, status_code=201)
async def import_backup_file(
    file: UploadFile = File(...),
    x_user_id: Optional[str] = Header(default=None),
) -> ImportSummary:
    if not (file.filename or "").lower().endswith(".json"):
        raise AppError(400, "Backup file must be a .json file", "BACKUP_INVALID_FILE")
    content = await file.read()
    try:
        payload = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise AppError(400, f"Backup file is not valid JSON: {exc}", "BACKUP_INVALID_FILE") from exc
    user_id, budget_id = await run_in_threadpool(_require_budget, x_user_id)
    return await run_in_threadpool(persistence.import_backup, user_id, budget_id, payload)


@app.post("/api/v1/backup/run-now", response_model=BackupRunResponse)
def run_backup_now(x_user_id: Optional[str] = Header(default=None)) -> BackupRunResponse:
    user_id, budget_id = _require_budget(x_user_id)
    file_path, ts = _create_backup_file(user_id, budget_id)
    logger.info("Wrote backup snapshot %s for user %s", file_path, user_id)
    _cleanup_old_backups(user_id, settings.backup_retention_days)
    return BackupRunResponse(created=True, file=str(file_path), timestamp=ts)
