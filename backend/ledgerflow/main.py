import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .classifier import classify_candidates
from .committer import confirm_staged
from .config import (
    CORS_ALLOW_ORIGINS,
    IMPORT_ERROR_LIMIT,
    IMPORT_MAX_UPLOAD_BYTES,
    IMPORT_MAX_UPLOAD_MB,
    IMPORT_RULES_LIMIT,
)
from .db import get_db, init_db
from .dispatcher import detect_format, extract_statement, file_extension, temporary_statement_file
from .errors import DecryptionError, ExtractionEmptyError, StatementImportError
from .ledger import account_refs, list_accounts
from .logging_utils import configure_logging, log_event, reset_request_id, set_request_id
from .records import Direction
from .staging import (
    bulk_update,
    clear_staged,
    list_pending,
    list_rules,
    load_rule_snapshot,
    new_batch_id,
    stage_candidates,
    staged_to_dict,
    update_staged,
)


configure_logging()

app = FastAPI(title="Ledgerflow Import API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started = datetime.now(timezone.utc)
    rid = request.headers.get("x-request-id") or secrets.token_hex(8)
    token = set_request_id(rid)
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        duration_ms = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)
        log_event(
            'error',
            'http.request_failed',
            method=request.method,
            path=request.url.path,
            query=str(request.url.query or ''),
            duration_ms=duration_ms,
        )
        raise
    finally:
        if response is not None:
            response.headers['X-Request-ID'] = rid
            duration_ms = int((datetime.now(timezone.utc) - started).total_seconds() * 1000)
            if request.url.path != '/health':
                status = int(response.status_code)
                req_level = 'error' if status >= 500 else 'warning' if status >= 400 else 'info'
                log_event(
                    req_level,
                    'http.request',
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                )
        reset_request_id(token)


def _with_request_id(request: Request, response: JSONResponse) -> JSONResponse:
    rid = request.headers.get('x-request-id')
    if rid:
        response.headers['X-Request-ID'] = rid
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    level = 'warning' if int(exc.status_code) < 500 else 'error'
    log_event(
        level,
        'http.http_exception',
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        detail=str(exc.detail),
    )
    return _with_request_id(request, JSONResponse(status_code=exc.status_code, content={'detail': exc.detail}))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    log_event(
        'warning',
        'http.validation_error',
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )
    return _with_request_id(request, JSONResponse(status_code=422, content={'detail': exc.errors()}))


@app.exception_handler(StatementImportError)
async def statement_import_error_handler(request: Request, exc: StatementImportError):
    log_event(
        'warning',
        'import.rejected',
        method=request.method,
        path=request.url.path,
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        detail=exc.message,
    )
    content = {'detail': exc.message, 'error': exc.message}
    if exc.hint:
        content['hint'] = exc.hint
    return _with_request_id(request, JSONResponse(status_code=exc.status_code, content=content))


@app.on_event("startup")
def on_startup() -> None:
    init_db()


def current_owner(x_user_id: Optional[str] = Header(default=None)) -> str:
    owner = (x_user_id or "").strip()
    if not owner:
        raise HTTPException(status_code=401, detail="Authentication required.")
    return owner


class StagedUpdateRequest(BaseModel):
    suggested_category: Optional[str] = Field(default=None, max_length=100)
    suggested_debit_account_id: Optional[str] = None
    suggested_credit_account_id: Optional[str] = None
    direction: Optional[Direction] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    status: Optional[str] = Field(default=None, max_length=20)


class BulkUpdateRequest(BaseModel):
    ids: List[int]
    updates: StagedUpdateRequest


class ConfirmRequest(BaseModel):
    batch_id: Optional[str] = None


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/accounts")
def get_accounts(db: Session = Depends(get_db), owner: str = Depends(current_owner)):
    return {
        "accounts": [
            {
                "account_id": a.account_id,
                "account_name": a.account_name,
                "account_type": a.account_type,
                "sub_type": a.sub_type,
                "current_balance": f"{a.current_balance:.2f}" if a.current_balance is not None else None,
            }
            for a in list_accounts(db, owner)
        ]
    }


@app.post("/api/import/upload")
def upload_statement(
    file: UploadFile = File(...),
    password: Optional[str] = Form(default=None),
    source_account_id: Optional[str] = Form(default=None),
    db: Session = Depends(get_db),
    owner: str = Depends(current_owner),
):
    """
    Parse a statement (PDF, CSV or Excel), classify every line against the
    owner's learned rules and stage the results for review. Nothing reaches
    the ledger until the batch is confirmed.

    Runs in the threadpool: extraction and staging are blocking work.
    """
    # One byte past the limit is enough to reject.
    data = file.file.read(IMPORT_MAX_UPLOAD_BYTES + 1)
    log_event(
        'info',
        'import.upload_received',
        file=file.filename,
        size=len(data),
        unlock_provided=bool(password),
        source_account_id=source_account_id,
    )
    if len(data) > IMPORT_MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail=f"File exceeds the {IMPORT_MAX_UPLOAD_MB} MB upload limit.")

    kind = detect_format(file.filename, data[:1024])
    with temporary_statement_file(data, file_extension(file.filename)) as path:
        try:
            result = extract_statement(path, kind, password)
        except DecryptionError as exc:
            log_event('warning', 'import.decrypt_failed', file=file.filename, reason=exc.reason)
            raise
        except ExtractionEmptyError:
            log_event('warning', 'import.extract_empty', file=file.filename, kind=kind)
            raise
        log_event(
            'info',
            'import.extracted',
            file=file.filename,
            kind=result.source_kind,
            bank_type=result.bank_type,
            is_credit_card=result.is_credit_card,
            count=len(result.transactions),
        )

        classified = classify_candidates(
            result.transactions,
            load_rule_snapshot(db, owner),
            account_refs(db, owner),
            source_account_id,
        )
        batch_id = new_batch_id()
        inserted, errors = stage_candidates(db, owner, batch_id, classified, file.filename)

    log_event('info', 'import.staged', batch_id=batch_id, parsed=len(classified), staged=inserted, failed=len(errors))
    return {
        "success": True,
        "batch_id": batch_id,
        "file": file.filename,
        "total_parsed": len(classified),
        "total_staged": inserted,
        "errors": errors[:IMPORT_ERROR_LIMIT],
        "message": f"Parsed {len(classified)} transactions. Please review and confirm.",
    }


@app.get("/api/import/staged")
def get_staged(
    batch_id: Optional[str] = None,
    db: Session = Depends(get_db),
    owner: str = Depends(current_owner),
):
    rows = list_pending(db, owner, batch_id)
    return {"staged": rows, "count": len(rows)}


@app.put("/api/import/staged/{staged_id}")
def put_staged(
    staged_id: int,
    payload: StagedUpdateRequest,
    db: Session = Depends(get_db),
    owner: str = Depends(current_owner),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update.")
    row = update_staged(db, owner, staged_id, changes)
    return {"success": True, "staged": staged_to_dict(row)}


@app.put("/api/import/staged-bulk")
def put_staged_bulk(
    payload: BulkUpdateRequest,
    db: Session = Depends(get_db),
    owner: str = Depends(current_owner),
):
    if not payload.ids:
        raise HTTPException(status_code=400, detail="No staged rows selected.")
    changes = payload.updates.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update.")
    updated = bulk_update(db, owner, payload.ids, changes)
    return {"success": True, "updated": updated}


@app.delete("/api/import/staged")
def delete_staged(
    batch_id: Optional[str] = None,
    db: Session = Depends(get_db),
    owner: str = Depends(current_owner),
):
    removed = clear_staged(db, owner, batch_id)
    log_event('info', 'import.cleared', batch_id=batch_id, removed=removed)
    return {"success": True, "message": "Cleared", "deleted": removed}


@app.post("/api/import/confirm")
def confirm_import(
    payload: Optional[ConfirmRequest] = None,
    db: Session = Depends(get_db),
    owner: str = Depends(current_owner),
):
    report = confirm_staged(db, owner, payload.batch_id if payload else None)
    return {"success": True, **report.to_dict()}


@app.get("/api/import/rules")
def get_rules(db: Session = Depends(get_db), owner: str = Depends(current_owner)):
    return {"rules": list_rules(db, owner, IMPORT_RULES_LIMIT)}
