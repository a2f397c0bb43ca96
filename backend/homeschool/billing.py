"""Subscription tiers, subscriptions, quotas and payment settlement.

A subscription is active while its status is ACTIVE and `expires_at` lies
in the future. Quotas are counted from the start of the current period,
which is `last_reset_at` when set and `started_at` otherwise. Tier limits
of 0 mean unlimited.
"""

import hmac
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import NotFoundError, PaymentRequiredError, ValidationError
from .utils.dates import add_days, add_months, utcnow

logger = logging.getLogger("homeschool.billing")


def add_interval(start: datetime, tier: models.SubscriptionTier, periods: int = 1) -> datetime:
    """Return `start` moved forward by `periods` billing intervals of `tier`."""
    if tier.interval == models.BillingInterval.YEAR:
        return add_months(start, 12 * periods)
    if tier.interval == models.BillingInterval.CUSTOM_DAYS:
        return add_days(start, max(1, tier.billing_days) * periods)
    return add_months(start, periods)


class TierService:
    def __init__(self, session: Session):
        self.session = session
        self.tiers = repositories.TierRepository(session)

    def list_active(self) -> List[models.SubscriptionTier]:
        return self.tiers.list_active()

    def get(self, tier_id: int) -> models.SubscriptionTier:
        tier = self.tiers.get(tier_id)
        if not tier:
            raise NotFoundError("tier not found")
        return tier

    def create(self, data: Dict[str, Any]) -> models.SubscriptionTier:
        if self.tiers.get_by_name(data["name"]):
            raise ValidationError("a tier with this name already exists")
        return self.tiers.save(models.SubscriptionTier(**data))

    def update(self, tier_id: int, changes: Dict[str, Any]) -> models.SubscriptionTier:
        tier = self.get(tier_id)
        name = changes.get("name")
        if name and name != tier.name and self.tiers.get_by_name(name):
            raise ValidationError("a tier with this name already exists")
        for key, value in changes.items():
            setattr(tier, key, value)
        return self.tiers.save(tier)

    def delete(self, tier_id: int) -> None:
        """Delete an unused tier; tiers with subscriptions are only deactivated."""
        tier = self.get(tier_id)
        if self.tiers.in_use(tier.id):
            tier.is_active = False
            self.tiers.save(tier)
            return
        self.tiers.delete(tier)


class SubscriptionService:
    """Reads the active subscription and enforces tier quotas."""
    def __init__(self, session: Session):
        self.session = session
        self.subs = repositories.SubscriptionRepository(session)
        self.tiers = repositories.TierRepository(session)
        self.users = repositories.UserRepository(session)

    def get_active(self, user_id: int) -> Tuple[Optional[models.Subscription], Optional[models.SubscriptionTier]]:
        sub = self.subs.get_active(user_id, utcnow())
        if not sub:
            return None, None
        return sub, self.tiers.get(sub.tier_id)

    @staticmethod
    def period_start(sub: models.Subscription) -> datetime:
        return sub.last_reset_at or sub.started_at

    def require_active(self, user_id: int, message: str = "an active subscription is required") -> Tuple[models.Subscription, models.SubscriptionTier]:
        sub, tier = self.get_active(user_id)
        if not sub or not tier:
            raise PaymentRequiredError(message)
        return sub, tier

    def enforce_creator_quota(self, user: models.User, kind: str) -> None:
        """Block content creation past the tier's per-period creator limit.

        Creators without an active subscription are not limited.
        """
        sub, tier = self.get_active(user.id)
        if not sub or not tier:
            return
        if kind == "exam":
            limit = tier.creator_exam_create_limit_per_period
            counter = repositories.ExamRepository(self.session).count_created_since
        else:
            limit = tier.creator_module_create_limit_per_period
            counter = repositories.StudyModuleRepository(self.session).count_created_since
        if limit <= 0:
            return
        used = counter(user.id, self.period_start(sub))
        if used >= limit:
            raise PaymentRequiredError(
                f"{kind} creation limit reached for the {tier.name} plan",
                {"limit": limit, "used": used},
            )

    def extend_or_create(self, user_id: int, tier: models.SubscriptionTier, periods: int = 1, auto_renew: bool = False) -> models.Subscription:
        """Renew the user's subscription to `tier` or start a new one.

        Renewing the same tier extends from the later of now and the
        current expiry and opens a fresh quota period. Moving to another
        tier cancels the old subscription and starts from now.
        """
        now = utcnow()
        existing = self.subs.get_active(user_id, now)
        if existing and existing.tier_id == tier.id:
            existing.expires_at = add_interval(max(now, existing.expires_at), tier, periods)
            existing.last_reset_at = now
            existing.auto_renew = existing.auto_renew or auto_renew
            self.subs.clear_module_access(existing.id)
            logger.info("subscription_extended user_id=%s tier=%s expires_at=%s", user_id, tier.name, existing.expires_at.isoformat())
            return self.subs.save(existing)
        if existing:
            existing.status = models.SubscriptionStatus.CANCELED
            self.session.add(existing)
        sub = models.Subscription(
            user_id=user_id,
            tier_id=tier.id,
            started_at=now,
            expires_at=add_interval(now, tier, periods),
            auto_renew=auto_renew,
            last_reset_at=now,
        )
        logger.info("subscription_created user_id=%s tier=%s", user_id, tier.name)
        return self.subs.save(sub)

    def assign(self, tier_id: int, user_id: Optional[int] = None, email: Optional[str] = None, months: int = 1) -> models.Subscription:
        """Admin grant of a tier to a user identified by id or email.

        `months` counts billing periods for MONTH tiers; YEAR tiers always
        grant one year and CUSTOM_DAYS tiers one `billing_days` period.
        """
        tier = self.tiers.get(tier_id)
        if not tier:
            raise NotFoundError("tier not found")
        user = self.users.get(user_id) if user_id is not None else self.users.get_by_email(email or "")
        if not user:
            raise NotFoundError("user not found")
        periods = months if tier.interval == models.BillingInterval.MONTH else 1
        return self.extend_or_create(user.id, tier, periods)

    def expire_overdue(self) -> int:
        """Mark ACTIVE subscriptions past their expiry as EXPIRED."""
        overdue = self.subs.list_overdue_active(utcnow())
        for sub in overdue:
            sub.status = models.SubscriptionStatus.EXPIRED
            self.session.add(sub)
        if overdue:
            self.session.commit()
            logger.info("subscriptions_expired count=%d", len(overdue))
        return len(overdue)


class PaymentService:
    """Flutterwave checkout initiation and webhook settlement."""
    def __init__(self, session: Session):
        self.session = session
        self.payments = repositories.PaymentRepository(session)
        self.tiers = repositories.TierRepository(session)
        self.subscriptions = SubscriptionService(session)

    def initiate(self, user: models.User, tier_id: int) -> Dict[str, Any]:
        tier = self.tiers.get(tier_id)
        if not tier or not tier.is_active:
            raise NotFoundError("tier not found")
        if tier.price_cents <= 0:
            raise ValidationError("free tiers do not require payment")
        tx_ref = f"hs_{user.id}_{int(utcnow().timestamp() * 1000)}"
        payment = self.payments.create(models.Payment(
            user_id=user.id,
            amount_cents=tier.price_cents,
            currency=tier.currency,
            tx_ref=tx_ref,
            meta={"tier_id": tier.id},
        ))
        logger.info("payment_initiated tx_ref=%s user_id=%s tier=%s", tx_ref, user.id, tier.name)
        return {
            "tx_ref": payment.tx_ref,
            "public_key": settings.FLW_PUBLIC_KEY,
            "payload": {
                "tx_ref": payment.tx_ref,
                "amount": f"{tier.price_cents / 100:.2f}",
                "currency": tier.currency,
                "redirect_url": f"{settings.PUBLIC_BASE_URL}/payments/flutterwave/callback",
                "customer": {"email": user.email, "name": user.name or "User"},
                "meta": {"tier_id": tier.id},
            },
        }

    @staticmethod
    def verify_signature(signature: Optional[str]) -> bool:
        """Check the `verif-hash` header when a secret hash is configured."""
        if not settings.FLW_SECRET_HASH:
            return True
        return hmac.compare_digest(signature or "", settings.FLW_SECRET_HASH)

    def handle_webhook(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Settle a pending payment from a gateway event.

        Unknown references and already-settled payments are acknowledged
        without side effects so gateway retries are harmless.
        """
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        tx_ref = data.get("tx_ref") or data.get("txRef")
        if not tx_ref:
            logger.warning("webhook_ignored reason=missing_tx_ref")
            return {"ok": True}
        payment = self.payments.get_by_tx_ref(str(tx_ref))
        if not payment:
            logger.warning("webhook_ignored reason=unknown_tx_ref tx_ref=%s", tx_ref)
            return {"ok": True}
        if payment.status != models.PaymentStatus.PENDING:
            logger.info("webhook_duplicate tx_ref=%s status=%s", tx_ref, payment.status.value)
            return {"ok": True, "status": payment.status.value}

        success = str(data.get("status", "")).lower() == "successful"
        flw_ref = data.get("flw_ref") or data.get("id")
        payment.status = models.PaymentStatus.SUCCESS if success else models.PaymentStatus.FAILED
        payment.flw_ref = str(flw_ref) if flw_ref is not None else None
        payment.raw = body
        payment.updated_at = utcnow()
        self.session.add(payment)

        tier = None
        if success:
            tier_id = (payment.meta or {}).get("tier_id")
            tier = self.tiers.get(tier_id) if tier_id is not None else None
        if tier:
            # committing the subscription also persists the payment update
            self.subscriptions.extend_or_create(payment.user_id, tier, auto_renew=True)
        else:
            self.payments.save(payment)
        logger.info("webhook_settled tx_ref=%s status=%s", tx_ref, payment.status.value)
        return {"ok": True, "status": payment.status.value}
