# scripts/seed.py

import os
import sys
import argparse

from dotenv import load_dotenv
from sqlmodel import Session, select

# Ensure root path for relative imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import engine, create_db_and_tables
from models.models import Organization, Plan, User, UserRole, BillingStatus

# ✅ Load environment variables
load_dotenv()

DEFAULT_PLANS = [
    {"name": "Basic", "unit_amount": 500, "env": "STRIPE_BASIC_PRICE_ID"},
    {"name": "Premium", "unit_amount": 1000, "env": "STRIPE_PREMIUM_PRICE_ID"},
    {"name": "Enterprise", "unit_amount": 2000, "env": "STRIPE_ENTERPRISE_PRICE_ID"},
]


def seed_plans(session: Session) -> None:
    for spec in DEFAULT_PLANS:
        plan = session.exec(select(Plan).where(Plan.name == spec["name"])).first()
        price_id = os.getenv(spec["env"])
        if not plan:
            plan = Plan(name=spec["name"], unit_amount=spec["unit_amount"], stripe_price_id=price_id)
            session.add(plan)
            print(f"✅ Created plan {spec['name']} (price: {price_id or 'not linked'})")
        elif price_id and plan.stripe_price_id != price_id:
            plan.stripe_price_id = price_id
            session.add(plan)
            print(f"🔄 Linked plan {spec['name']} to price {price_id}")
    session.commit()


def seed_dev_data(customer_id: str | None = None) -> None:
    """Seed development database with a demo organization, its admin and the plan catalogue."""
    print("🌱 Seeding development data...")
    create_db_and_tables()

    with Session(engine) as session:
        seed_plans(session)

        # -----------------------------
        # 🏢 Create Demo Organization
        # -----------------------------
        org = session.exec(
            select(Organization).where(Organization.name == "Demo Organization")
        ).first()

        if not org:
            org = Organization(
                name="Demo Organization",
                billing_status=BillingStatus.SETUP_REQUIRED.value,
                stripe_customer_id=customer_id,
            )
            session.add(org)
            session.commit()
            session.refresh(org)
            print(f"✅ Created Demo Organization ({org.id})")

        # -----------------------------
        # 👑 Admin User
        # -----------------------------
        admin_user = session.exec(
            select(User).where(User.email == "admin@demo.com")
        ).first()

        if not admin_user:
            admin_user = User(
                full_name="Admin User",
                email="admin@demo.com",
                role=UserRole.SUPER_ADMIN.value,
                organization_id=org.id,
            )
            session.add(admin_user)
            session.commit()
            print("✅ Created admin@demo.com")

    print("🌱 Done.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed BillSync development data")
    parser.add_argument("--customer-id", help="Stripe customer id to link to the demo organization")
    args = parser.parse_args()
    seed_dev_data(customer_id=args.customer_id)
