"""
creditledger/features/balance/service.py

Balance aggregation across subscription grants and add-on credits.

Read-only. Every call goes to the database; there is no cache, so the
result reflects every committed consume at the moment of the read.
"""

from datetime import datetime
from typing import Dict, List, Optional
import logging
from sqlalchemy import select

from creditledger.core.database import get_db_session, subscription_grants, addon_credits
from creditledger.core.timeutils import normalize_now
from creditledger.models.balance import FeatureBalance, ReconciledBalance
from creditledger.models.feature import Feature, parse_feature
from creditledger.models.ledger import AddOnCredit, SubscriptionGrant


logger = logging.getLogger(__name__)


def _load_sources(user_id: str):
    with get_db_session() as session:
        grant_rows = session.execute(
            select(subscription_grants).where(subscription_grants.c.user_id == user_id)
        ).fetchall()
        addon_rows = session.execute(
            select(addon_credits).where(addon_credits.c.user_id == user_id)
        ).fetchall()
    grants = [SubscriptionGrant.from_row(r) for r in grant_rows]
    addons = [AddOnCredit.from_row(r) for r in addon_rows]
    return grants, addons


def aggregate(
    user_id: str,
    grants: List[SubscriptionGrant],
    addons: List[AddOnCredit],
    now: datetime,
) -> ReconciledBalance:
    """Fold grants and add-ons into per-feature totals.

    Only active, unexpired grants count. Add-ons never expire and count in
    full: purchased toward total, purchased - remaining toward used.
    """
    totals: Dict[Feature, int] = {f: 0 for f in Feature}
    used: Dict[Feature, int] = {f: 0 for f in Feature}

    for grant in grants:
        if not grant.is_current(now):
            continue
        for feature in Feature:
            totals[feature] += grant.totals[feature]
            used[feature] += grant.used[feature]

    for addon in addons:
        totals[addon.feature] += addon.quantity_purchased
        used[addon.feature] += addon.quantity_purchased - addon.quantity_remaining

    return ReconciledBalance(
        user_id=user_id,
        has_entitlement=bool(grants) or bool(addons),
        features={f: FeatureBalance(total=totals[f], used=used[f]) for f in Feature},
    )


def get_balance(user_id: str, *, now: Optional[datetime] = None) -> ReconciledBalance:
    ts = normalize_now(now)
    grants, addons = _load_sources(user_id)
    balance = aggregate(user_id, grants, addons, ts)
    logger.debug(
        "[balance] computed",
        extra={"user_id": user_id, "grants": len(grants), "addons": len(addons)},
    )
    return balance


def get_feature_remaining(user_id: str, feature, *, now: Optional[datetime] = None) -> int:
    return get_balance(user_id, now=now).remaining(parse_feature(feature))
