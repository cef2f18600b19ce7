"""
api/routes/v1/customers.py -- Customer routes for the REST API.

Routes:
  GET    /customers                         -- all customers (optional ?account_id=)
  GET    /accounts/{account_id}/customers   -- customers of one account
  POST   /accounts/{account_id}/customers   -- attach a customer to a live account
  PATCH  /customers/{customer_id}           -- edit (no-op when nothing differs)
  DELETE /customers/{customer_id}           -- remove

customer_count on the owning account is kept by store triggers; these routes
never touch it.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from accounts.lifecycle import AccountError, CustomerChanges
from api.models import CustomerCreate, CustomerResponse, CustomerUpdate
from api.routes.v1.accounts import account_error
from audit.models import Actor
from auth.dependencies import require_allowed

router = APIRouter(dependencies=[Depends(require_allowed)])


@router.get("/customers", response_model=list[CustomerResponse])
def list_customers(request: Request, account_id: Optional[int] = None) -> list[CustomerResponse]:
    try:
        customers = request.app.state.lifecycle.list_customers(account_id)
    except AccountError as exc:
        raise account_error(exc) from exc
    return [CustomerResponse.from_customer(c) for c in customers]


@router.get("/accounts/{account_id}/customers", response_model=list[CustomerResponse])
def list_account_customers(request: Request, account_id: int) -> list[CustomerResponse]:
    try:
        customers = request.app.state.lifecycle.list_customers(account_id)
    except AccountError as exc:
        raise account_error(exc) from exc
    return [CustomerResponse.from_customer(c) for c in customers]


@router.post("/accounts/{account_id}/customers", response_model=CustomerResponse, status_code=201)
def create_customer(
    request: Request,
    account_id: int,
    body: CustomerCreate,
    actor: Actor = Depends(require_allowed),
) -> CustomerResponse:
    try:
        customer = request.app.state.lifecycle.create_customer(
            actor, account_id, body.name, phone=body.phone, notes=body.notes
        )
    except AccountError as exc:
        raise account_error(exc) from exc
    return CustomerResponse.from_customer(customer)


@router.patch("/customers/{customer_id}", response_model=CustomerResponse)
def update_customer(
    request: Request,
    customer_id: int,
    body: CustomerUpdate,
    actor: Actor = Depends(require_allowed),
) -> CustomerResponse:
    changes = CustomerChanges(name=body.name, phone=body.phone, notes=body.notes)
    try:
        customer = request.app.state.lifecycle.update_customer(actor, customer_id, changes)
    except AccountError as exc:
        raise account_error(exc) from exc
    return CustomerResponse.from_customer(customer)


@router.delete("/customers/{customer_id}", status_code=204)
def delete_customer(
    request: Request,
    customer_id: int,
    actor: Actor = Depends(require_allowed),
) -> Response:
    try:
        request.app.state.lifecycle.delete_customer(actor, customer_id)
    except AccountError as exc:
        raise account_error(exc) from exc
    return Response(status_code=204)
