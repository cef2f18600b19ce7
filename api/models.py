"""
API request and response models for the iCloud Sentinel REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in accounts/, auth/ and
audit/, which own the internal domain representation. Route handlers map
between the two with the from_* factory classmethods below.

Passwords appear in responses only on AccountDetailResponse, which is served
by GET /accounts/{id} to allow-listed callers. List and export views never
carry password material.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from accounts.lifecycle import AccountDetail, TrashItem
from accounts.models import Account, Customer
from audit.models import AuditLogEntry
from auth.models import AllowListEntry

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AccountStatusEnum(str, Enum):
    active = "active"
    inactive = "inactive"
    pending = "pending"
    in_period = "in_period"
    expired_period = "expired_period"


class RoleEnum(str, Enum):
    owner = "owner"
    admin = "admin"
    user = "user"


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=320)
    password: Optional[str] = Field(default=None, max_length=512)
    phone_number: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=4000)


class AccountUpdate(BaseModel):
    """PATCH body. Omitted fields are left alone; "" clears phone_number/notes.

    An omitted or empty password keeps the current one.
    """

    username: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=512)
    phone_number: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=4000)


class AccountStatusUpdate(BaseModel):
    status: AccountStatusEnum


class PasswordRestoreRequest(BaseModel):
    """history_index refers to the stored (oldest-first) history order."""

    history_index: int = Field(ge=0)


class AccountResponse(BaseModel):
    """Account without password material."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    phone_number: Optional[str] = None
    notes: Optional[str] = None
    status: str
    customer_count: int
    password_history_count: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    deleted_at: Optional[str] = None
    deleted_by: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            phone_number=account.phone_number,
            notes=account.notes,
            status=account.status,
            customer_count=account.customer_count,
            password_history_count=len(account.password_history),
            created_at=account.created_at,
            updated_at=account.updated_at,
            deleted_at=account.deleted_at,
            deleted_by=account.deleted_by,
        )


class PasswordHistoryRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    password: str
    changed_at: str


class AccountDetailResponse(BaseModel):
    """Account plus decrypted password and history (newest first)."""

    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    password: Optional[str] = None
    password_history: list[PasswordHistoryRow] = []

    @classmethod
    def from_detail(cls, detail: AccountDetail) -> "AccountDetailResponse":
        return cls(
            account=AccountResponse.from_account(detail.account),
            password=detail.password,
            password_history=[
                PasswordHistoryRow(index=h.index, password=h.password, changed_at=h.changed_at)
                for h in detail.history
            ],
        )


class TrashRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: AccountResponse
    purge_eligible: bool
    purge_after: str

    @classmethod
    def from_item(cls, item: TrashItem) -> "TrashRow":
        return cls(
            account=AccountResponse.from_account(item.account),
            purge_eligible=item.purge_eligible,
            purge_after=item.purge_after,
        )


class ImportResponse(BaseModel):
    """Response for POST /api/v1/accounts/import."""

    model_config = ConfigDict(frozen=True)

    added: int
    skipped: int


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


class CustomerCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=4000)


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=4000)


class CustomerResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    account_id: int
    name: str
    phone: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_customer(cls, customer: Customer) -> "CustomerResponse":
        return cls(
            id=customer.id,
            account_id=customer.account_id,
            name=customer.name,
            phone=customer.phone,
            notes=customer.notes,
            created_at=customer.created_at,
            updated_at=customer.updated_at,
        )


# ---------------------------------------------------------------------------
# Allow-list
# ---------------------------------------------------------------------------


class AllowedEmailCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    role: RoleEnum = RoleEnum.user
    is_active: bool = True
    notes: Optional[str] = Field(default=None, max_length=1000)


class AllowedEmailUpdate(BaseModel):
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class AllowedEmailResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    is_active: bool
    added_by: Optional[str] = None
    added_at: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: AllowListEntry) -> "AllowedEmailResponse":
        return cls(
            id=entry.id,
            email=entry.email,
            role=entry.role,
            is_active=entry.is_active,
            added_by=entry.added_by,
            added_at=entry.added_at,
            notes=entry.notes,
        )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    email: str
    subject: str
    provider: str
    role: str
    is_owner: bool


class ProviderRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    email: str
    action: str
    details: str
    timestamp: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogRow":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            email=entry.email,
            action=entry.action,
            details=entry.details,
            timestamp=entry.timestamp,
        )


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class GeneratePasswordRequest(BaseModel):
    length: int = Field(default=10, ge=4, le=128)


class GeneratePasswordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    password: str
    strength: str


class StrengthRequest(BaseModel):
    password: str = Field(max_length=512)


class StrengthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    strength: str


# ---------------------------------------------------------------------------
# Generic data proxy
# ---------------------------------------------------------------------------


class DataOperation(str, Enum):
    select = "select"
    insert = "insert"
    update = "update"
    delete = "delete"


class FilterOperator(str, Enum):
    eq = "eq"
    neq = "neq"
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    like = "like"
    ilike = "ilike"
    in_ = "in"
    is_ = "is"
    isNot = "isNot"


class DataFilter(BaseModel):
    column: str = Field(min_length=1, max_length=64)
    operator: FilterOperator
    value: Any = None


class DataOrderBy(BaseModel):
    column: str = Field(min_length=1, max_length=64)
    ascending: bool = True


class DataRequest(BaseModel):
    """Body for POST /api/v1/data.

    data is a single row (dict) or a list of rows for insert, a dict of
    column values for update, and ignored for select/delete.
    """

    table: str = Field(min_length=1, max_length=64)
    operation: DataOperation
    data: Optional[dict[str, Any] | list[dict[str, Any]]] = None
    filters: list[DataFilter] = []
    select: Optional[str] = Field(default=None, max_length=500)
    orderBy: Optional[DataOrderBy] = None
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


class DataResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: list[dict[str, Any]]
    count: int


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
