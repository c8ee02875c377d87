import logging

import stripe

from core.config import Settings
from core.errors import InvalidTransition, PaymentConfigurationError, TransientDependencyFailure
from models.models import SubscriptionStatus
from schemas.billing_schema import CancellationResponse
from services.plan_catalog import PlanCatalog
from services.subscription_store import SubscriptionStore, Trigger

logger = logging.getLogger(__name__)


class CancellationService:
    """
    Forwards cancellations to Stripe.

    The local record is never changed here: Stripe answers with
    ``customer.subscription.updated`` (cancel at period end) or
    ``customer.subscription.deleted`` and the webhook reconciler applies it.
    """

    def __init__(self, catalog: PlanCatalog, store: SubscriptionStore, settings: Settings):
        self.catalog = catalog
        self.store = store
        self.api_key = settings.STRIPE_SECRET_KEY
        if self.api_key:
            stripe.api_key = self.api_key

    def request_cancellation(self, organization_id: str, at_period_end: bool = True) -> CancellationResponse:
        record = self.store.get_record(organization_id)
        plan = self.catalog.get_plan(record.plan_id)
        subscription_ref = record.external_subscription_ref
        if not plan.is_recurring or not subscription_ref or record.status == SubscriptionStatus.CANCELED.value:
            logger.warning("🚫 Org %s has no live subscription to cancel (plan=%s, status=%s)", organization_id, plan.id, record.status)
            raise InvalidTransition(organization_id, record.status, Trigger.CANCELED.value)
        if not self.api_key:
            raise TransientDependencyFailure("Payment provider is not configured")

        try:
            if at_period_end:
                stripe.Subscription.modify(subscription_ref, cancel_at_period_end=True)
            else:
                stripe.Subscription.cancel(subscription_ref)
        except stripe.InvalidRequestError as e:
            logger.error("❌ Stripe refused to cancel %s: %s", subscription_ref, e)
            raise PaymentConfigurationError(str(e), subscription_ref=subscription_ref)
        except stripe.StripeError as e:
            logger.error("❌ Stripe API error while canceling %s: %s", subscription_ref, e)
            raise TransientDependencyFailure("Payment service unavailable, please try again")

        logger.info(
            "🛑 Cancellation of %s requested for org %s (at_period_end=%s)", subscription_ref, organization_id, at_period_end
        )
        return CancellationResponse(
            organization_id=organization_id,
            subscription_ref=subscription_ref,
            at_period_end=at_period_end,
            status="requested",
        )

    def cancel_superseded(self, subscription_ref: str) -> None:
        """Stop billing a subscription that a later checkout replaced."""
        if not self.api_key:
            logger.warning("⚠️ STRIPE_SECRET_KEY not set, subscription %s left running at Stripe", subscription_ref)
            return
        stripe.Subscription.cancel(subscription_ref)
        logger.info("🛑 Superseded subscription %s canceled at Stripe", subscription_ref)
