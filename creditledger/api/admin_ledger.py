"""
Admin ledger operations.

All routes require X-Admin-Key and write ledger_audit rows with the admin
actor identity.

- POST /admin/ledger/reconcile: drain due reconciliation rows and run the integrity check
- POST /admin/ledger/reconcile/{provider_transaction_id}/requeue: retry a failed reconciliation now
- POST /admin/ledger/expire: mark grants past end_time as expired
- POST /admin/ledger/regrant: compensate a user with fresh add-on credits
- POST /admin/ledger/grants/{grant_id}/revoke: revoke a grant
- GET  /admin/ledger/audit: recent audit rows
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator

from creditledger.core.auth import AdminActor, require_admin
from creditledger.core.errors import NotFoundError
from creditledger.features.audit.service import list_ledger_audit
from creditledger.features.grants.reconcile_job import requeue_failed, run_integrity_check, run_pending
from creditledger.features.grants.service import expire_grants, revoke_grant
from creditledger.features.ledger.service import regrant


router = APIRouter(prefix="/admin/ledger", tags=["admin-ledger"])


class ReconcileRequest(BaseModel):
    fix: bool = False
    limit: Optional[int] = None


class RegrantRequest(BaseModel):
    user_id: str
    feature: str
    quantity: int
    reason: str

    @field_validator("user_id", "feature", "reason")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class RevokeRequest(BaseModel):
    reason: str


@router.post("/reconcile")
def reconcile(body: ReconcileRequest, actor: AdminActor = Depends(require_admin)):
    queue = run_pending(limit=body.limit, owner=actor.actor_id)
    integrity = run_integrity_check(fix=body.fix)
    return {"queue": queue, "integrity": integrity}


@router.post("/reconcile/{provider_transaction_id}/requeue")
def requeue(provider_transaction_id: str, actor: AdminActor = Depends(require_admin)):
    requeued = requeue_failed(provider_transaction_id, actor=actor.actor_id)
    if not requeued:
        raise NotFoundError(f"No failed reconciliation for {provider_transaction_id}")
    return {"provider_transaction_id": provider_transaction_id, "requeued": requeued}


@router.post("/expire")
def expire(actor: AdminActor = Depends(require_admin)):
    return {"expired": expire_grants()}


@router.post("/regrant")
def compensate(body: RegrantRequest, actor: AdminActor = Depends(require_admin)):
    result = regrant(
        body.user_id,
        body.feature,
        body.quantity,
        reason=body.reason,
        actor=actor.actor_id,
    )
    return {
        "user_id": result.user_id,
        "feature": result.feature.value,
        "quantity": result.quantity,
        "addon_credit_id": result.addon_credit_id,
        "transaction_id": result.transaction_id,
    }


@router.post("/grants/{grant_id}/revoke")
def revoke(grant_id: int, body: RevokeRequest, actor: AdminActor = Depends(require_admin)):
    grant = revoke_grant(grant_id, reason=body.reason, actor=actor.actor_id)
    return {"grant_id": grant.id, "status": grant.status.value}


@router.get("/audit")
def audit_log(
    action: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    return {"entries": list_ledger_audit(action=action, target_user_id=user_id, limit=limit)}
