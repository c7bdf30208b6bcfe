import json
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from creditledger.core.database import get_db_session, ledger_audit
from creditledger.core.timeutils import normalize_now

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system_job"


def _safe_payload(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str, sort_keys=True)


def record_ledger_audit(
    session: Session,
    *,
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> None:
    """Write an audit row inside the caller's transaction.

    The row commits or rolls back together with the change it describes.
    """
    session.execute(
        insert(ledger_audit).values(
            actor=actor,
            action=action,
            target_user_id=target_user_id,
            target_resource=target_resource,
            payload_json=_safe_payload(payload),
            created_at=normalize_now(now),
        )
    )
    logger.info(
        "[audit] %s",
        action,
        extra={"actor": actor, "user_id": target_user_id, "target_resource": target_resource},
    )


def list_ledger_audit(
    *,
    action: Optional[str] = None,
    target_user_id: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Most recent audit rows first, payloads decoded."""
    query = select(ledger_audit)
    if action:
        query = query.where(ledger_audit.c.action == action)
    if target_user_id:
        query = query.where(ledger_audit.c.target_user_id == target_user_id)
    query = query.order_by(ledger_audit.c.id.desc()).limit(limit)

    with get_db_session() as session:
        rows = session.execute(query).fetchall()

    entries = []
    for row in rows:
        entries.append({
            "id": row.id,
            "actor": row.actor,
            "action": row.action,
            "target_user_id": row.target_user_id,
            "target_resource": row.target_resource,
            "payload": json.loads(row.payload_json) if row.payload_json else None,
            "created_at": row.created_at,
        })
    return entries
