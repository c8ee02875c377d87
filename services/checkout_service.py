import json
import logging
from typing import Any, Dict, Optional

import stripe

from core.config import Settings
from core.errors import InvalidPlan, PaymentConfigurationError, TransientDependencyFailure
from schemas.billing_schema import CheckoutSessionResponse, CheckoutVerification
from services.plan_catalog import PlanCatalog, PlanDefinition
from services.subscription_store import SubscriptionStore
from services.webhook_reconciler import PAID_CHECKOUT_STATUSES, WebhookReconciler

logger = logging.getLogger(__name__)


def _as_dict(stripe_object: Any) -> Dict[str, Any]:
    if type(stripe_object) is dict:
        return stripe_object
    # StripeObject renders itself as JSON, nested objects included
    return json.loads(str(stripe_object))


class CheckoutService:
    """
    Creates Stripe Checkout sessions for paid plans.

    Nothing is granted here: the organization and plan travel in the session
    metadata and the webhook reconciler applies them once Stripe confirms the
    payment.
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        store: SubscriptionStore,
        settings: Settings,
        reconciler: Optional[WebhookReconciler] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.reconciler = reconciler
        self.api_key = settings.STRIPE_SECRET_KEY
        self.success_url = settings.STRIPE_SUCCESS_URL
        self.cancel_url = settings.STRIPE_CANCEL_URL
        if self.api_key:
            stripe.api_key = self.api_key
        else:
            logger.warning("⚠️ STRIPE_SECRET_KEY not set, checkout is disabled")

    @staticmethod
    def _line_item(plan: PlanDefinition) -> Dict[str, Any]:
        if plan.stripe_price_id:
            return {"price": plan.stripe_price_id, "quantity": 1}
        # No catalog price configured in Stripe: send the amount inline
        price_data: Dict[str, Any] = {
            "currency": plan.currency.lower(),
            "unit_amount": plan.price,
            "product_data": {"name": f"TeamMove {plan.name}", "description": plan.description},
        }
        if plan.is_recurring:
            price_data["recurring"] = {"interval": "month", "interval_count": plan.billing_interval_months or 1}
        return {"price_data": price_data, "quantity": 1}

    def create_checkout_session(
        self,
        organization_id: str,
        plan_id: str,
        customer_email: Optional[str] = None,
    ) -> CheckoutSessionResponse:
        plan = self.catalog.get_plan(plan_id)
        if plan.is_free:
            raise InvalidPlan(plan_id)
        organization = self.store.get_organization(organization_id)
        record = self.store.get_record(organization_id)
        if not self.api_key:
            raise TransientDependencyFailure("Payment provider is not configured")

        metadata = {"organizationId": organization_id, "planId": plan.id, "planKind": plan.kind.value}
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [self._line_item(plan)],
            "mode": plan.checkout_mode,
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": organization_id,
            "metadata": metadata,
            "locale": "auto",
            "allow_promotion_codes": True,
        }
        if record.external_customer_ref:
            params["customer"] = record.external_customer_ref
        elif customer_email or organization.contact_email:
            params["customer_email"] = customer_email or organization.contact_email

        if plan.is_recurring:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            checkout_session = stripe.checkout.Session.create(**params)
        except stripe.InvalidRequestError as e:
            logger.error("❌ Stripe invalid request error: %s", e)
            error_msg = str(e)
            if "No such price" in error_msg:
                error_msg = "Payment configuration error for this plan. Please contact support."
            raise PaymentConfigurationError(error_msg, plan_id=plan.id)
        except stripe.StripeError as e:
            logger.error("❌ Stripe API error: %s", e)
            raise TransientDependencyFailure("Payment service unavailable, please try again")

        logger.info("✅ Checkout session %s created for org %s (plan=%s)", checkout_session.id, organization_id, plan.id)
        return CheckoutSessionResponse(
            checkout_url=checkout_session.url,
            session_id=checkout_session.id,
            plan_id=plan.id,
        )

    # ============================================================
    # ✅ Success-page verification (webhook fallback)
    # ============================================================
    def verify_checkout_session(self, session_id: str) -> CheckoutVerification:
        """
        Look the session up at Stripe and apply it if it is paid.

        Covers a delayed webhook when the organizer lands on the success page.
        The reconciler's ledger makes this and the webhook apply the session
        once between them.
        """
        if not self.api_key or self.reconciler is None:
            raise TransientDependencyFailure("Payment provider is not configured")

        try:
            checkout_session = stripe.checkout.Session.retrieve(session_id)
        except stripe.InvalidRequestError as e:
            logger.warning("❌ Unknown checkout session %s: %s", session_id, e)
            raise PaymentConfigurationError(f"Unknown checkout session {session_id}", session_id=session_id)
        except stripe.StripeError as e:
            logger.error("❌ Stripe API error: %s", e)
            raise TransientDependencyFailure("Payment service unavailable, please try again")

        session_data = _as_dict(checkout_session)
        metadata = session_data.get("metadata") or {}
        payment_status = session_data.get("payment_status")
        if payment_status not in PAID_CHECKOUT_STATUSES:
            logger.info("⏳ Checkout session %s not paid yet (payment_status=%s)", session_id, payment_status)
            return CheckoutVerification(
                session_id=session_id,
                status="pending",
                organization_id=metadata.get("organizationId"),
                plan_id=metadata.get("planId"),
                detail=f"payment_status={payment_status}",
            )

        result = self.reconciler.apply_checkout_session(session_data)
        return CheckoutVerification(
            session_id=session_id,
            status=result.status,
            organization_id=result.organization_id or metadata.get("organizationId"),
            plan_id=metadata.get("planId"),
            detail=result.detail,
        )
