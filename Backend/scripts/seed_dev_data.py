#!/usr/bin/env python3
"""
Seed Development Data

Creates the tables, seeds the vendor and product catalog, and optionally
adds demo subscribers so the admin dashboard has something to show.

Usage:
    cd Backend
    python scripts/seed_dev_data.py

    # Also add demo subscribers (completed, verified-only, unverified):
    python scripts/seed_dev_data.py --demo-subscribers
"""

import argparse
import asyncio
import logging
import os
import sys
from decimal import Decimal

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
load_dotenv()

from sqlalchemy import func, select

from biggbuzz.core.db import AsyncSessionLocal, Base, engine
from biggbuzz.ledger import apply_token_transaction
from biggbuzz.models import Product, Subscriber, TokenTransactionType, utcnow
from biggbuzz.security import hash_sa_id
from biggbuzz.seed import seed_initial_data
from biggbuzz.validation import mask_phone, parse_sa_id

# ────────────────────────────────────────────────────────────────
# Configuration
# ────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

DEMO_DEPOSIT = Decimal("1000.00")

# (SA ID, phone, first name, last name, active, phone verified, terms accepted)
DEMO_SUBSCRIBERS = [
    ("9001015000085", "+27821110001", "Thandi", "Nkosi", True, True, True),
    ("8505205123086", "+27831110002", "Sipho", "Dlamini", True, True, False),
    ("9202204720083", "+27841110003", "Ayanda", "Mokoena", False, False, False),
]


# ────────────────────────────────────────────────────────────────
# Seeding
# ────────────────────────────────────────────────────────────────

async def seed_demo_subscribers(session) -> int:
    created = 0
    now = utcnow()
    for sa_id, phone, first_name, last_name, active, verified, terms in DEMO_SUBSCRIBERS:
        existing = await session.execute(select(Subscriber.id).where(Subscriber.phone_number == phone))
        if existing.first():
            logger.info(f"⏭️  Subscriber already exists: {first_name} {last_name}")
            continue

        info = parse_sa_id(sa_id)
        subscriber = Subscriber(
            phone_number=phone,
            sa_id_hash=hash_sa_id(sa_id),
            sa_id_last4=sa_id[-4:],
            first_name=first_name,
            last_name=last_name,
            date_of_birth=info.date_of_birth,
            gender=info.gender,
            is_sa_citizen=info.is_sa_citizen,
            is_active=active,
            phone_verified=verified,
            phone_verified_at=now if verified else None,
            accepted_terms=terms,
            accepted_privacy=terms,
            terms_accepted_at=now if terms else None,
        )
        session.add(subscriber)
        await session.flush()

        if active and terms:
            await apply_token_transaction(
                session,
                subscriber,
                type=TokenTransactionType.DEPOSIT,
                amount=DEMO_DEPOSIT,
                description="Demo balance",
                reference="seed",
            )
        created += 1
        logger.info(f"✅ Created subscriber: {first_name} {last_name} ({mask_phone(phone)})")

    await session.commit()
    return created


async def summarize(session) -> dict:
    return {
        "subscribers": await session.scalar(select(func.count(Subscriber.id))),
        "verified": await session.scalar(
            select(func.count(Subscriber.id)).where(Subscriber.phone_verified.is_(True))
        ),
        "active": await session.scalar(
            select(func.count(Subscriber.id)).where(Subscriber.is_active.is_(True))
        ),
        "products": await session.scalar(select(func.count(Product.id))),
    }


async def run_seeding(demo_subscribers: bool) -> dict:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as session:
        await seed_initial_data(session)
        logger.info("✅ Catalog seeded")

        if demo_subscribers:
            created = await seed_demo_subscribers(session)
            logger.info(f"✅ {created} demo subscribers created")

        results = await summarize(session)

    await engine.dispose()
    return results


def main():
    parser = argparse.ArgumentParser(description="Seed Bigg Buzz development data")
    parser.add_argument(
        "--demo-subscribers",
        action="store_true",
        help="Also create demo subscribers in each registration state",
    )
    args = parser.parse_args()

    try:
        results = asyncio.run(run_seeding(args.demo_subscribers))
    except KeyboardInterrupt:
        logger.info("🛑 Interrupted by user")
        sys.exit(130)

    logger.info("📊 Database Summary:")
    logger.info(f"   Total Subscribers: {results['subscribers']}")
    logger.info(f"   Verified Subscribers: {results['verified']}")
    logger.info(f"   Active Subscribers: {results['active']}")
    logger.info(f"   Products: {results['products']}")


if __name__ == "__main__":
    main()
