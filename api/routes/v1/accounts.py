"""
api/routes/v1/accounts.py -- Account credential routes for the REST API.

Routes (in registration order to avoid FastAPI path capture conflicts):
  GET    /accounts                             -- live accounts
  POST   /accounts                             -- create account
  GET    /accounts/trash                       -- trashed accounts + purge eligibility
  GET    /accounts/export                      -- CSV export (no password columns)
  POST   /accounts/import                      -- CSV upload, 1 MB cap
  GET    /accounts/{account_id}                -- detail with decrypted password/history
  PATCH  /accounts/{account_id}                -- edit (no-op when nothing differs)
  PATCH  /accounts/{account_id}/status         -- change status
  POST   /accounts/{account_id}/password/restore -- make a history entry current
  DELETE /accounts/{account_id}                -- soft delete (move to trash)
  POST   /accounts/{account_id}/restore        -- restore from trash
  DELETE /accounts/{account_id}/permanent      -- purge (30 days after soft delete)

Every route requires an allow-listed identity. All mutations go through
AccountLifecycle, which writes the audit entries.
"""

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile
from fastapi.responses import Response

from accounts.ingest import parse_import_csv, to_csv
from accounts.lifecycle import AccountChanges, AccountError, AccountLifecycle
from api.limiter import IMPORT_LIMIT, limiter
from api.models import (
    AccountCreate,
    AccountDetailResponse,
    AccountResponse,
    AccountStatusUpdate,
    AccountUpdate,
    ErrorDetail,
    ImportResponse,
    PasswordRestoreRequest,
    TrashRow,
)
from audit.models import Actor, AuditAction
from auth.dependencies import require_allowed

router = APIRouter(dependencies=[Depends(require_allowed)])

_MAX_UPLOAD_BYTES = 1 * 1024 * 1024  # 1 MB

_STATUS_BY_CODE = {
    "not_found": 404,
    "conflict": 409,
    "invalid_state": 409,
    "purge_not_allowed": 409,
    "invalid_history_index": 400,
    "invalid_status": 400,
    "password_unreadable": 500,
}


def account_error(exc: AccountError) -> HTTPException:
    """Translate a lifecycle error into the structured HTTP error envelope."""
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, 400),
        detail=ErrorDetail(code=exc.code, message=str(exc)).model_dump(),
    )


def _lifecycle(request: Request) -> AccountLifecycle:
    return request.app.state.lifecycle


# ---------------------------------------------------------------------------
# Collection routes
# ---------------------------------------------------------------------------


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(request: Request) -> list[AccountResponse]:
    """Return live (not trashed) accounts, newest first."""
    return [AccountResponse.from_account(a) for a in _lifecycle(request).list_accounts()]


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    actor: Actor = Depends(require_allowed),
) -> AccountResponse:
    try:
        account = _lifecycle(request).create_account(
            actor,
            body.username,
            password=body.password,
            phone_number=body.phone_number,
            notes=body.notes,
        )
    except AccountError as exc:
        raise account_error(exc) from exc
    return AccountResponse.from_account(account)


@router.get("/accounts/trash", response_model=list[TrashRow])
def list_trash(request: Request) -> list[TrashRow]:
    """Return every trashed account with its purge deadline and eligibility."""
    return [TrashRow.from_item(item) for item in _lifecycle(request).list_trash()]


@router.get("/accounts/export")
def export_accounts(request: Request, actor: Actor = Depends(require_allowed)) -> Response:
    """Download live accounts as CSV. Password material is never exported."""
    accounts = _lifecycle(request).list_accounts()
    body = to_csv(accounts)
    request.app.state.audit.log_action(
        actor.user_id, actor.email, AuditAction.DATA_EXPORTED, f"Exported {len(accounts)} accounts to CSV."
    )
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="accounts.csv"'},
    )


@limiter.limit(IMPORT_LIMIT)
@router.post("/accounts/import", response_model=ImportResponse)
async def import_accounts(
    request: Request,
    file: UploadFile,
    actor: Actor = Depends(require_allowed),
) -> ImportResponse:
    """Bulk-create accounts from a CSV export.

    Accepted header aliases are listed in accounts/ingest.py. Rows whose
    username is not email-shaped or already exists are skipped; one
    DATA_IMPORTED entry summarizes the batch.
    """
    # Size guard -- read up to 1 MB + 1 byte; reject if over limit
    raw = await file.read(_MAX_UPLOAD_BYTES + 1)
    if len(raw) > _MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=ErrorDetail(
                code="file_too_large",
                message="Upload must be 1 MB or smaller.",
            ).model_dump(),
        )
    content = raw.decode("utf-8", errors="replace")
    rows = parse_import_csv(content)
    if not rows:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(
                code="empty_import",
                message="No data rows found. Expected a CSV with a username or email column.",
            ).model_dump(),
        )
    result = await asyncio.to_thread(_lifecycle(request).import_accounts, actor, rows)
    return ImportResponse(added=result.added, skipped=result.skipped)


# ---------------------------------------------------------------------------
# Single-account routes
# ---------------------------------------------------------------------------


@router.get("/accounts/{account_id}", response_model=AccountDetailResponse)
def get_account(request: Request, account_id: int) -> AccountDetailResponse:
    try:
        detail = _lifecycle(request).get_account_detail(account_id)
    except AccountError as exc:
        raise account_error(exc) from exc
    return AccountDetailResponse.from_detail(detail)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    request: Request,
    account_id: int,
    body: AccountUpdate,
    actor: Actor = Depends(require_allowed),
) -> AccountResponse:
    changes = AccountChanges(
        username=body.username,
        password=body.password,
        phone_number=body.phone_number,
        notes=body.notes,
    )
    try:
        account = _lifecycle(request).update_account(actor, account_id, changes)
    except AccountError as exc:
        raise account_error(exc) from exc
    return AccountResponse.from_account(account)


@router.patch("/accounts/{account_id}/status", response_model=AccountResponse)
def change_status(
    request: Request,
    account_id: int,
    body: AccountStatusUpdate,
    actor: Actor = Depends(require_allowed),
) -> AccountResponse:
    try:
        account = _lifecycle(request).change_status(actor, account_id, body.status.value)
    except AccountError as exc:
        raise account_error(exc) from exc
    return AccountResponse.from_account(account)


@router.post("/accounts/{account_id}/password/restore", response_model=AccountResponse)
def restore_password(
    request: Request,
    account_id: int,
    body: PasswordRestoreRequest,
    actor: Actor = Depends(require_allowed),
) -> AccountResponse:
    try:
        account = _lifecycle(request).restore_password(actor, account_id, body.history_index)
    except AccountError as exc:
        raise account_error(exc) from exc
    return AccountResponse.from_account(account)


@router.delete("/accounts/{account_id}", response_model=AccountResponse)
def soft_delete_account(
    request: Request,
    account_id: int,
    actor: Actor = Depends(require_allowed),
) -> AccountResponse:
    """Move the account to the trash. It can be restored until it is purged."""
    try:
        account = _lifecycle(request).soft_delete(actor, account_id)
    except AccountError as exc:
        raise account_error(exc) from exc
    return AccountResponse.from_account(account)


@router.post("/accounts/{account_id}/restore", response_model=AccountResponse)
def restore_account(
    request: Request,
    account_id: int,
    actor: Actor = Depends(require_allowed),
) -> AccountResponse:
    try:
        account = _lifecycle(request).restore_from_trash(actor, account_id)
    except AccountError as exc:
        raise account_error(exc) from exc
    return AccountResponse.from_account(account)


@router.delete("/accounts/{account_id}/permanent", status_code=204)
def purge_account(
    request: Request,
    account_id: int,
    actor: Actor = Depends(require_allowed),
) -> Response:
    """Permanently delete a trashed account and its customers.

    409 purge_not_allowed until 30 days after the soft delete.
    """
    try:
        _lifecycle(request).purge_account(actor, account_id)
    except AccountError as exc:
        raise account_error(exc) from exc
    return Response(status_code=204)
