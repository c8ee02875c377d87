# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings
from core.database import create_db_and_tables
from core.errors import OrganizationAlreadyExists
from services.container import build_services
from services.subscription_store import CheckoutRefs

# ✅ Load environment variables
load_dotenv()

DEV_ORGANIZATIONS = [
    # (id, name, contact email, plan bought at seed time)
    ("demo-free", "Demo Association", "free@demo.com", None),
    ("demo-pack", "Demo Événements", "pack@demo.com", "pack10"),
    ("demo-pro", "Demo Club Pro", "pro@demo.com", "pro-club"),
]


def seed_organizations(organizations):
    billing = build_services(settings)
    create_db_and_tables(billing.engine)

    for org_id, name, email, plan_id in organizations:
        try:
            billing.store.register_organization(org_id, name, email)
            print(f"✅ Created organization {org_id}")
        except OrganizationAlreadyExists:
            print(f"ℹ️ Organization {org_id} already exists, skipping")
            continue

        if plan_id:
            plan = billing.catalog.get_plan(plan_id)
            with billing.store.locked(org_id) as (session, record):
                billing.store.apply_checkout(
                    record,
                    plan,
                    billing.store.clock(),
                    CheckoutRefs(session_ref=f"seed_{org_id}", subscription_ref=f"sub_seed_{org_id}" if plan.is_recurring else None),
                )
                session.add(record)
                session.commit()
            print(f"   - Activated plan {plan_id}")

    billing.shutdown()


def seed_dev_data():
    """Seed development database with one organization per plan family."""
    print("🌱 Seeding development data...")
    seed_organizations(DEV_ORGANIZATIONS)
    print("🌱 Development data seeding complete.")


def seed_staging_data():
    """Seed staging database with minimal safe data."""
    print("🌱 Seeding staging data...")
    seed_organizations([("staging-org", "Staging Org", "staging-admin@teammove.fr", None)])
    print("🌱 Staging data seeding complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the TeamMove billing database.")
    parser.add_argument(
        "--env",
        choices=["dev", "staging"],
        default="dev",
        help="Select environment to seed (dev or staging)",
    )
    args = parser.parse_args()

    if args.env == "dev":
        seed_dev_data()
    elif args.env == "staging":
        seed_staging_data()
