"""
api/routes/v1/audit.py -- Read-only audit log view.

  GET /api/v1/audit-log?action=ACCOUNT_UPDATED&limit=100  -- newest first

Entries are never modified or deleted through the API.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuditLogRow, ErrorDetail
from audit.models import AuditAction
from auth.dependencies import require_allowed

router = APIRouter(dependencies=[Depends(require_allowed)])

_ACTIONS = {a.value for a in AuditAction}


@router.get("/audit-log", response_model=list[AuditLogRow])
def list_audit_log(
    request: Request,
    action: Optional[str] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 200,
) -> list[AuditLogRow]:
    if action is not None and action not in _ACTIONS:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(
                code="invalid_param",
                message=f"action must be one of: {', '.join(sorted(_ACTIONS))}",
            ).model_dump(),
        )
    entries = request.app.state.audit_store.list_entries(action=action, limit=limit)
    return [AuditLogRow.from_entry(e) for e in entries]
