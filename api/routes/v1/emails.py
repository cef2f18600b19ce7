"""
api/routes/v1/emails.py -- Allow-list management. Owner only.

Routes:
  GET    /api/v1/emails              -- list entries, newest first
  POST   /api/v1/emails              -- add an email with a role
  PATCH  /api/v1/emails/{entry_id}   -- change role / is_active / notes
  DELETE /api/v1/emails/{entry_id}   -- remove an entry

Audit tags: ALLOWED_EMAIL_ADDED, ALLOWED_EMAIL_UPDATED (role/notes),
ALLOWED_EMAIL_ACTIVATED / ALLOWED_EMAIL_DEACTIVATED (is_active flips),
ALLOWED_EMAIL_DELETED.

Security:
  [M4] An owner cannot deactivate, demote or delete their own entry, and the
       last active owner cannot be deactivated, demoted or deleted by anyone.
       Without an active owner nobody can manage the allow-list again short
       of editing the database (python main.py add-owner).
  Every change clears the access cache so cached owner/allowed answers do
  not outlive the entry they were computed from.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.exc import IntegrityError

from api.models import AllowedEmailCreate, AllowedEmailResponse, AllowedEmailUpdate
from audit.models import Actor, AuditAction
from auth.dependencies import require_owner
from auth.models import AllowListEntry, Role
from auth.store import AccessStore, normalize_email

router = APIRouter(dependencies=[Depends(require_owner)])


def _store(request: Request) -> AccessStore:
    return request.app.state.access_store


def _get_or_404(store: AccessStore, entry_id: int) -> AllowListEntry:
    entry = store.get_entry(entry_id)
    if entry is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Allow-list entry not found."},
        )
    return entry


def _is_active_owner(entry: AllowListEntry) -> bool:
    return entry.is_active and entry.role == Role.owner.value


def _guard_last_owner(store: AccessStore, target: AllowListEntry, actor: Actor) -> None:
    """[M4] Refuse changes that would remove an active owner we cannot afford to lose."""
    if normalize_email(target.email) == normalize_email(actor.email):
        raise HTTPException(
            status_code=400,
            detail={"code": "self_lockout", "message": "You cannot deactivate, demote or remove your own entry."},
        )
    if _is_active_owner(target) and store.count_active_owners() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_owner", "message": "Cannot remove the last active owner."},
        )


@router.get("/emails", response_model=list[AllowedEmailResponse])
def list_emails(request: Request) -> list[AllowedEmailResponse]:
    return [AllowedEmailResponse.from_entry(e) for e in _store(request).list_entries()]


@router.post("/emails", response_model=AllowedEmailResponse, status_code=201)
def add_email(
    request: Request,
    body: AllowedEmailCreate,
    actor: Actor = Depends(require_owner),
) -> AllowedEmailResponse:
    store = _store(request)
    entry = AllowListEntry(
        email=body.email,
        role=body.role.value,
        is_active=body.is_active,
        added_by=actor.email,
        notes=body.notes,
    )
    try:
        entry_id = store.create_entry(entry)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f"{normalize_email(body.email)} is already on the allow-list."},
        ) from exc
    request.app.state.cached_policy.invalidate()
    created = _get_or_404(store, entry_id)
    request.app.state.audit.log_action(
        actor.user_id,
        actor.email,
        AuditAction.ALLOWED_EMAIL_ADDED,
        f"Added {created.email} to the allow-list as {created.role}.",
    )
    return AllowedEmailResponse.from_entry(created)


@router.patch("/emails/{entry_id}", response_model=AllowedEmailResponse)
def update_email(
    request: Request,
    entry_id: int,
    body: AllowedEmailUpdate,
    actor: Actor = Depends(require_owner),
) -> AllowedEmailResponse:
    store = _store(request)
    target = _get_or_404(store, entry_id)

    updates: dict = {}
    if body.role is not None and body.role.value != target.role:
        if target.role == Role.owner.value:
            _guard_last_owner(store, target, actor)  # [M4] demotion
        updates["role"] = body.role.value
    if body.notes is not None and (body.notes or None) != (target.notes or None):
        updates["notes"] = body.notes or None
    if body.is_active is not None and body.is_active != target.is_active:
        if not body.is_active:
            _guard_last_owner(store, target, actor)  # [M4] deactivation
        updates["is_active"] = body.is_active

    if not updates:
        return AllowedEmailResponse.from_entry(target)

    store.update_entry(entry_id, **updates)
    request.app.state.cached_policy.invalidate()

    audit = request.app.state.audit
    if "is_active" in updates:
        action = AuditAction.ALLOWED_EMAIL_ACTIVATED if updates["is_active"] else AuditAction.ALLOWED_EMAIL_DEACTIVATED
        verb = "Activated" if updates["is_active"] else "Deactivated"
        audit.log_action(actor.user_id, actor.email, action, f"{verb} allow-list entry {target.email}.")
    changed = [f"{name} from '{getattr(target, name) or ''}' to '{updates[name] or ''}'" for name in ("role", "notes") if name in updates]
    if changed:
        audit.log_action(
            actor.user_id,
            actor.email,
            AuditAction.ALLOWED_EMAIL_UPDATED,
            f"Updated allow-list entry {target.email}. Changes: {', '.join(changed)}.",
        )
    return AllowedEmailResponse.from_entry(_get_or_404(store, entry_id))


@router.delete("/emails/{entry_id}", status_code=204)
def delete_email(
    request: Request,
    entry_id: int,
    actor: Actor = Depends(require_owner),
) -> Response:
    store = _store(request)
    target = _get_or_404(store, entry_id)
    _guard_last_owner(store, target, actor)  # [M4]
    store.delete_entry(entry_id)
    request.app.state.cached_policy.invalidate()
    request.app.state.audit.log_action(
        actor.user_id,
        actor.email,
        AuditAction.ALLOWED_EMAIL_DELETED,
        f"Removed {target.email} from the allow-list.",
    )
    return Response(status_code=204)
