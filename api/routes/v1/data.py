"""
api/routes/v1/data.py -- Generic data endpoint.

  POST /api/v1/data
    {"table": "customers", "operation": "select",
     "filters": [{"column": "account_id", "operator": "eq", "value": 3}],
     "orderBy": {"column": "created_at", "ascending": false}, "limit": 50}

Returns {"data": [...], "count": n}. Bad input -> 400, store failure -> 500,
both in the standard error envelope. The table/column/operator rules live in
core/proxy.py.

Requires an allow-listed identity like every other data route.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from api.models import DataRequest, DataResponse, ErrorDetail
from audit.models import Actor
from auth.dependencies import require_allowed
from core.proxy import DataProxy, ProxyError, QueryFilter

logger = logging.getLogger("sentinel.api.data")

router = APIRouter()


@router.post("/data", response_model=DataResponse)
def data_proxy(
    request: Request,
    body: DataRequest,
    actor: Actor = Depends(require_allowed),
) -> DataResponse:
    proxy: DataProxy = request.app.state.proxy
    try:
        result = proxy.execute(
            body.table,
            body.operation.value,
            data=body.data,
            filters=[QueryFilter(f.column, f.operator.value, f.value) for f in body.filters],
            select=body.select,
            order_by=body.orderBy.column if body.orderBy else None,
            ascending=body.orderBy.ascending if body.orderBy else True,
            limit=body.limit,
        )
    except ProxyError as exc:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(code="invalid_query", message=str(exc)).model_dump(),
        ) from exc
    except SQLAlchemyError as exc:
        logger.exception("Data proxy %s on %s failed for %s", body.operation.value, body.table, actor.email)
        raise HTTPException(
            status_code=500,
            detail=ErrorDetail(code="store_error", message="The data store rejected the request.").model_dump(),
        ) from exc
    if body.operation.value != "select":
        logger.info("Data proxy %s on %s by %s: %d rows", body.operation.value, body.table, actor.email, result.count)
    return DataResponse(data=result.data, count=result.count)
