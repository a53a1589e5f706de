from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from rebooked.extensions import db
from rebooked.models import AffiliateOrder, AffiliateReferral, Order


def track_affiliate_order(order: Order) -> AffiliateOrder | None:
    """Record a pending affiliate earning when the seller was referred."""
    referral = AffiliateReferral.query.filter_by(referred_user_id=int(order.seller_id)).first()
    if referral is None:
        return None
    existing = AffiliateOrder.query.filter_by(order_id=int(order.id)).first()
    if existing is not None:
        return existing
    row = AffiliateOrder(
        order_id=int(order.id),
        referral_id=int(referral.id),
        affiliate_user_id=int(referral.affiliate_user_id),
        status="pending",
    )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return AffiliateOrder.query.filter_by(order_id=int(order.id)).first()
    current_app.logger.info(
        "affiliate_order_tracked order_id=%s affiliate_user_id=%s", order.id, referral.affiliate_user_id
    )
    return row
