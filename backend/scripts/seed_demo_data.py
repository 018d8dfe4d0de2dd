"""
Seed demo zones, products, bottle stock and kegs.

This script can be run from either:
- backend/: `uv run python scripts/seed_demo_data.py`
- repo root: `uv run python backend/scripts/seed_demo_data.py`

Seeds the simulation partition by default so training counts never touch real stock.
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

# Allow running from repo root by ensuring `backend/` is on sys.path
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy import func, select

from db.database import async_session_maker, create_db_and_tables
from db.inventory.stock import StockRecord
from db.keg import HALF_BARREL_OZ, Keg
from db.product import Product
from db.zone import Zone


ZONES = [
    ("Back Bar", "Bottles behind the bar"),
    ("Walk-in Cooler", "Cans, bottles and on-deck kegs"),
]

# name, is_sold_by_volume, container_size_ml, backup_count, open_fraction, on_deck, tapped (tap id, fill)
PRODUCTS = [
    ("House Bourbon", False, 750, 6, 0.5, 0, []),
    ("Blanco Tequila", False, 750, 4, 0.25, 0, []),
    ("Local Pilsner 16oz Can", False, 473, 48, 0.0, 0, []),
    ("Hazy IPA 1/2 bbl", True, None, 0, 0.0, 1, [("tap-1", 0.65)]),
    ("Dry Stout 1/2 bbl", True, None, 0, 0.0, 2, [("tap-4", 0.3)]),
]


async def get_or_create_zone(session, name: str, description: str) -> Zone:
    result = await session.execute(select(Zone).where(func.lower(Zone.name) == name.lower()))
    zone = result.scalar_one_or_none()
    if zone:
        return zone
    zone = Zone(name=name, description=description)
    session.add(zone)
    await session.flush()
    return zone


async def get_or_create_product(session, name: str, is_sold_by_volume: bool, container_size_ml) -> tuple[Product, bool]:
    result = await session.execute(select(Product).where(func.lower(Product.name) == name.lower()))
    product = result.scalar_one_or_none()
    if product:
        return product, False
    product = Product(name=name, is_sold_by_volume=is_sold_by_volume, container_size_ml=container_size_ml)
    session.add(product)
    await session.flush()
    return product, True


async def seed(mode_tag: str) -> None:
    await create_db_and_tables()
    now = datetime.now(timezone.utc)
    created_products = 0
    created_kegs = 0

    async with async_session_maker() as session:
        for name, description in ZONES:
            await get_or_create_zone(session, name, description)

        for name, by_volume, size_ml, backup, opened, on_deck, tapped in PRODUCTS:
            product, created = await get_or_create_product(session, name, by_volume, size_ml)
            if not created:
                continue
            created_products += 1

            if not by_volume:
                session.add(
                    StockRecord(
                        product_id=product.id,
                        mode_tag=mode_tag,
                        backup_count=backup,
                        open_fraction=opened,
                        last_modified_at=now,
                    )
                )
                continue

            for _ in range(on_deck):
                session.add(Keg(product_id=product.id, mode_tag=mode_tag, status="on_deck", date_received=now))
                created_kegs += 1
            for tap_id, fill in tapped:
                session.add(
                    Keg(
                        product_id=product.id,
                        mode_tag=mode_tag,
                        status="tapped",
                        initial_volume=HALF_BARREL_OZ,
                        remaining_volume=HALF_BARREL_OZ * fill,
                        tap_id=tap_id,
                        date_received=now,
                        date_tapped=now,
                    )
                )
                created_kegs += 1

        await session.commit()

    print(f"[seed_demo_data] mode={mode_tag} created_products={created_products} created_kegs={created_kegs}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--production", action="store_true", help="Seed the production partition instead of simulation")
    args = parser.parse_args()

    asyncio.run(seed("production" if args.production else "simulation"))
