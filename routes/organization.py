# routes/organization.py
from fastapi import APIRouter, Depends, status

from routes.billing import get_billing
from schemas.billing_schema import OrganizationCreate, SubscriptionRead
from services.container import BillingServices

router = APIRouter(prefix="/organizations", tags=["Organizations"])


# ==================================================================
#  ✅ CREATE ORGANIZATION (starts on the Free plan)
# ==================================================================
@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_organization(payload: OrganizationCreate, billing: BillingServices = Depends(get_billing)):
    """Register an organization and its Free subscription record."""
    return billing.store.register_organization(payload.id, payload.name, payload.contact_email)
