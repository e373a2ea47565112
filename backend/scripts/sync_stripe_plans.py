#!/usr/bin/env python3
"""
Stripe Plan Catalog Sync

Upserts every active recurring Stripe price into subscription_plans, using
product metadata (tier, studentLimit, moduleLimit, customModuleLimit) for
the plan limits. Same routine the API runs when the catalog is empty.

Usage:
    python -m scripts.sync_stripe_plans            # Sync into the database
    python -m scripts.sync_stripe_plans --dry-run  # Show what would be written
"""

import asyncio
import argparse
import logging

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from noteearly.config.settings import get_settings
from noteearly.domain.subscription import plan_from_gateway_price
from noteearly.infrastructure.db.database import close_db, init_db
from noteearly.infrastructure.db.repositories import (
    CustomerSubscriptionRepository,
    SubscriptionPlanRepository,
    UserProfileRepository,
)
from noteearly.infrastructure.payments.stripe_service import get_stripe_service
from noteearly.infrastructure.services.subscription_service import SubscriptionService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def preview_catalog() -> int:
    """Print the plans Stripe would produce without touching the database."""
    prices = await get_stripe_service().list_recurring_prices()
    plans = [plan for plan in map(plan_from_gateway_price, prices) if plan]

    for plan in plans:
        print(
            f"  {plan.id}: {plan.name} [{plan.tier.value}] {plan.price} / {plan.interval} "
            f"students={plan.student_limit} modules={plan.module_limit} "
            f"custom={plan.custom_module_limit}"
        )
    print(f"\n{len(plans)} of {len(prices)} prices map to plans")
    return len(plans)


async def sync_catalog() -> int:
    """Run the catalog sync against the configured database."""
    await init_db()
    try:
        service = SubscriptionService(
            stripe_service=get_stripe_service(),
            plans=SubscriptionPlanRepository(),
            subscriptions=CustomerSubscriptionRepository(),
            profiles=UserProfileRepository(),
            settings=get_settings(),
        )
        synced = await service.sync_plans_from_gateway()
    finally:
        await close_db()

    free_plans = [plan for plan in synced if not plan.tier.is_paid]
    if not free_plans:
        logger.warning(
            "No free-tier price in Stripe. Users without a subscription "
            "resolve to the free plan, so one must exist in the catalog."
        )
    return len(synced)


async def main():
    parser = argparse.ArgumentParser(description="Sync subscription plans from Stripe")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the plans that would be written"
    )
    args = parser.parse_args()

    if args.dry_run:
        await preview_catalog()
        return

    count = await sync_catalog()

    print("\n=== Sync Complete ===")
    print(f"Plans upserted: {count}")


if __name__ == "__main__":
    asyncio.run(main())
