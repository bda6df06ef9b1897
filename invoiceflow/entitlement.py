"""
Billing entitlement for automated reminder delivery.

An account may receive automated sends while its subscription is ACTIVE or
TRIALING, has not reached ``ends_at``, and (when trialing) has not reached
``trial_ends_at``. Free accounts without a subscription row are not entitled.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import or_, select
from invoiceflow.models import Subscription, SubscriptionStatus

ENTITLED_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


def is_entitled(subscription: Optional[Subscription], now: datetime) -> bool:
    if subscription is None:
        return False
    if subscription.status not in ENTITLED_STATUSES:
        return False
    if subscription.ends_at is not None and subscription.ends_at <= now:
        return False
    if (subscription.status == SubscriptionStatus.TRIALING
            and subscription.trial_ends_at is not None
            and subscription.trial_ends_at <= now):
        return False
    return True


def entitled_account_clause(account_id_column, now: datetime):
    """SQL predicate: ``account_id_column`` belongs to an entitled account."""
    entitled = (
        select(Subscription.account_id)
        .where(Subscription.status.in_(ENTITLED_STATUSES))
        .where(or_(Subscription.ends_at.is_(None), Subscription.ends_at > now))
        .where(or_(
            Subscription.status != SubscriptionStatus.TRIALING,
            Subscription.trial_ends_at.is_(None),
            Subscription.trial_ends_at > now,
        ))
    )
    return account_id_column.in_(entitled)
