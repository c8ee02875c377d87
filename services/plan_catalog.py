"""
TeamMove Plan Catalog

Plan tiers:
- Free: lifetime caps on events and invitations, no payment required
- Event packs (single / pack10): one-shot credits valid for 12 months
- Pro plans: monthly subscriptions with unlimited events and invitations

This is the only place plan identifiers and their grants are defined; the
quota service, the webhook reconciler and the sweeper all resolve plans here.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.config import Settings
from core.errors import InvalidPlan
from models.models import FREE_PLAN_ID, PlanKind

CATALOG_VERSION = "2025-01"


class PlanDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: PlanKind
    name: str
    description: str = ""
    price: int = Field(default=0, description="Price in minor currency units (cents)")
    currency: str = "EUR"
    # None = unlimited
    event_credits_granted: Optional[int] = None
    event_cap: Optional[int] = None
    invitation_cap: Optional[int] = None
    validity_months: Optional[int] = None
    billing_interval_months: Optional[int] = None
    stripe_price_id: Optional[str] = None
    features: List[str] = Field(default_factory=list)

    @property
    def is_free(self) -> bool:
        return self.kind == PlanKind.FREE

    @property
    def is_one_shot(self) -> bool:
        return self.kind == PlanKind.ONE_SHOT_CREDITS

    @property
    def is_recurring(self) -> bool:
        return self.kind == PlanKind.RECURRING

    @property
    def checkout_mode(self) -> str:
        """Stripe Checkout mode for this plan."""
        return "subscription" if self.is_recurring else "payment"


class PlanCatalog:
    """Read-only lookup over the plan table."""

    def __init__(self, plans: List[PlanDefinition], version: str = CATALOG_VERSION):
        free_plans = [plan for plan in plans if plan.is_free]
        if len(free_plans) != 1:
            raise ValueError(f"Plan catalog needs exactly one free plan, got {len(free_plans)}")
        self.version = version
        self._plans: Dict[str, PlanDefinition] = {plan.id: plan for plan in plans}
        self._free = free_plans[0]

    def get_plan(self, plan_id: Optional[str]) -> PlanDefinition:
        plan = self._plans.get(plan_id) if plan_id else None
        if plan is None:
            raise InvalidPlan(plan_id)
        return plan

    def free_plan(self) -> PlanDefinition:
        return self._free

    def list_plans(self) -> List[PlanDefinition]:
        return list(self._plans.values())

    def plan_for_stripe_price(self, stripe_price_id: str) -> Optional[PlanDefinition]:
        for plan in self._plans.values():
            if plan.stripe_price_id and plan.stripe_price_id == stripe_price_id:
                return plan
        return None

    def upgrade_recommendation(self, plan_id: str) -> Optional[str]:
        """Plan to suggest when an organization hits a quota on ``plan_id``."""
        plan = self.get_plan(plan_id)
        if plan.is_free:
            return "single"
        if plan.is_one_shot:
            return "pro-club"
        return None

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._plans


def default_plans(settings: Settings) -> List[PlanDefinition]:
    return [
        PlanDefinition(
            id=FREE_PLAN_ID,
            kind=PlanKind.FREE,
            name="Découverte",
            description="Parfait pour découvrir TeamMove",
            price=0,
            event_cap=settings.FREE_PLAN_EVENT_CAP,
            invitation_cap=settings.FREE_PLAN_INVITATION_CAP,
            features=[
                f"{settings.FREE_PLAN_EVENT_CAP} événement maximum",
                f"Jusqu'à {settings.FREE_PLAN_INVITATION_CAP} invitations",
                "Gestion du covoiturage",
                "Support par email",
            ],
        ),
        PlanDefinition(
            id="single",
            kind=PlanKind.ONE_SHOT_CREDITS,
            name="Pack Événement",
            description="Idéal pour un événement ponctuel",
            price=1500,
            event_credits_granted=1,
            validity_months=12,
            stripe_price_id=settings.STRIPE_PRICE_SINGLE,
            features=["1 événement complet", "Invitations illimitées", "Support prioritaire"],
        ),
        PlanDefinition(
            id="pack10",
            kind=PlanKind.ONE_SHOT_CREDITS,
            name="Pack 10 Événements",
            description="Parfait pour les organisateurs réguliers",
            price=15000,
            event_credits_granted=10,
            validity_months=12,
            stripe_price_id=settings.STRIPE_PRICE_PACK10,
            features=["10 événements complets", "Invitations illimitées", "Valable 12 mois"],
        ),
        PlanDefinition(
            id="pro-club",
            kind=PlanKind.RECURRING,
            name="Clubs & Associations",
            description="Conçu pour les clubs et associations",
            price=1999,
            billing_interval_months=1,
            stripe_price_id=settings.STRIPE_PRICE_PRO_CLUB,
            features=["Événements illimités", "Invitations illimitées", "Branding personnalisé"],
        ),
        PlanDefinition(
            id="pro-pme",
            kind=PlanKind.RECURRING,
            name="PME",
            description="Idéal pour les PME",
            price=4900,
            billing_interval_months=1,
            stripe_price_id=settings.STRIPE_PRICE_PRO_PME,
            features=["Tout de Clubs & Associations", "Multi-utilisateurs (5 admins)", "Reporting avancé"],
        ),
        PlanDefinition(
            id="pro-entreprise",
            kind=PlanKind.RECURRING,
            name="Grandes Entreprises",
            description="Solution entreprise complète",
            price=9900,
            billing_interval_months=1,
            stripe_price_id=settings.STRIPE_PRICE_PRO_ENTREPRISE,
            features=["Tout de PME", "Multi-utilisateurs illimités", "Support 24/7"],
        ),
    ]


def build_catalog(settings: Settings) -> PlanCatalog:
    return PlanCatalog(default_plans(settings))
