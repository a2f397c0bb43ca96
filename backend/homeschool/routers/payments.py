"""Subscription tiers, the caller's subscription and Flutterwave payments."""

import logging

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from sqlmodel import Session

from .. import models, serializers
from ..auth import get_current_user, require_admin
from ..billing import PaymentService, SubscriptionService, TierService
from ..database import get_session
from ..schemas import PaymentInitiateIn, SubscriptionAssignIn, TierIn, TierUpdateIn

router = APIRouter(prefix="/api", tags=["billing"])
logger = logging.getLogger("homeschool.api")


@router.get("/subscriptions/tiers")
def list_tiers(session: Session = Depends(get_session)):
    return {"tiers": [serializers.tier_out(t) for t in TierService(session).list_active()]}


@router.post("/subscriptions/tiers", status_code=201)
def create_tier(payload: TierIn, admin: models.User = Depends(require_admin), session: Session = Depends(get_session)):
    return {"tier": serializers.tier_out(TierService(session).create(payload.model_dump()))}


@router.put("/subscriptions/tiers/{tier_id}")
def update_tier(tier_id: int, payload: TierUpdateIn, admin: models.User = Depends(require_admin), session: Session = Depends(get_session)):
    tier = TierService(session).update(tier_id, payload.model_dump(exclude_unset=True))
    return {"tier": serializers.tier_out(tier)}


@router.delete("/subscriptions/tiers/{tier_id}")
def delete_tier(tier_id: int, admin: models.User = Depends(require_admin), session: Session = Depends(get_session)):
    TierService(session).delete(tier_id)
    return {"ok": True}


@router.get("/subscriptions/me")
def my_subscription(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    sub, tier = SubscriptionService(session).get_active(user.id)
    if not sub:
        return {"active": False}
    return {"active": True, "subscription": serializers.subscription_out(sub, tier)}


@router.post("/subscriptions/assign")
def assign_subscription(payload: SubscriptionAssignIn, admin: models.User = Depends(require_admin), session: Session = Depends(get_session)):
    svc = SubscriptionService(session)
    sub = svc.assign(payload.tier_id, payload.user_id, payload.email, payload.months)
    return {"subscription": serializers.subscription_out(sub, svc.tiers.get(sub.tier_id))}


@router.post("/payments/flutterwave/initiate")
def initiate_payment(payload: PaymentInitiateIn, user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return PaymentService(session).initiate(user, payload.tier_id)


@router.post("/payments/flutterwave/webhook")
def payment_webhook(
    body: dict = Body(...),
    verif_hash: str | None = Header(default=None, alias="verif-hash"),
    session: Session = Depends(get_session),
):
    """Settle a payment from a Flutterwave event; the body must be a JSON object."""
    if not PaymentService.verify_signature(verif_hash):
        logger.warning("webhook_rejected reason=bad_signature")
        raise HTTPException(status_code=401, detail="invalid signature")
    return PaymentService(session).handle_webhook(body)
