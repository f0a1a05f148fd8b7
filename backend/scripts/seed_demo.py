"""
Seed demo reference data, allocations, weekly sales and batches
Run from: backend directory
Usage: python scripts/seed_demo.py
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import date, timedelta

from sqlalchemy import select

from rebalancer.database.session import SessionLocal, init_db
from rebalancer.models import Location, Sku, SalesVelocity, StockBatch
from rebalancer.services.allocation_store import AllocationStore

LOCATIONS = [
    ("WH-CENTRAL", "Central Warehouse", "central_warehouse", "North"),
    ("HUB-NORTH", "North Hub", "hub", "North"),
    ("HUB-SOUTH", "South Hub", "hub", "South"),
    ("ST-001", "Store 001 Downtown", "store", "North"),
    ("ST-002", "Store 002 Riverside", "store", "South"),
]

SKUS = [
    ("MILK-1L", "Fresh Milk 1L", "1 L", "Dairy"),
    ("YOG-500", "Greek Yogurt 500g", "500 g", "Dairy"),
    ("RICE-5K", "Basmati Rice 5kg", "5 kg", "Staples"),
]

# (sku_code, location_code, target, on_hand)
ALLOCATIONS = [
    ("MILK-1L", "WH-CENTRAL", 400, 620),
    ("MILK-1L", "HUB-NORTH", 150, 90),
    ("MILK-1L", "ST-001", 60, 20),
    ("MILK-1L", "ST-002", 60, 55),
    ("YOG-500", "WH-CENTRAL", 200, 240),
    ("YOG-500", "HUB-SOUTH", 80, 30),
    ("YOG-500", "ST-002", 40, 12),
    ("RICE-5K", "WH-CENTRAL", 300, 310),
    ("RICE-5K", "HUB-NORTH", 100, 95),
    ("RICE-5K", "ST-001", 40, 44),
]


def seed():
    init_db()
    db = SessionLocal()
    try:
        if db.execute(select(Sku)).first() is not None:
            print("⚠️  Demo data already present, skipping")
            return

        db.add_all(Location(location_code=c, location_name=n, role=r, region=g) for c, n, r, g in LOCATIONS)
        db.add_all(Sku(sku_code=c, sku_name=n, pack_size=p, category=cat) for c, n, p, cat in SKUS)
        db.commit()

        records = [
            {"skuCode": s, "locationCode": l, "target": t, "allocated": t, "onHand": o, "safetyStock": t // 4}
            for s, l, t, o in ALLOCATIONS
        ]
        counts = AllocationStore(db).import_allocations(records, actor="seed")
        print(f"✅ Allocations: {counts['created']} created")

        skus = {s.sku_code: s for s in db.execute(select(Sku)).scalars()}
        locations = {l.location_code: l for l in db.execute(select(Location)).scalars()}
        monday = date.today() - timedelta(days=date.today().weekday())
        for week in range(8):
            week_start = monday - timedelta(weeks=week)
            for s, l, t, o in ALLOCATIONS:
                db.add(SalesVelocity(
                    sku_id=skus[s].id,
                    location_id=locations[l].id,
                    week_start=week_start,
                    units_sold=max(t // 5 - week * 2, 1),
                    margin_per_unit=1.25 if locations[l].role == "store" else 0.4,
                    closing_on_hand=o + week * 5,
                ))

        db.add_all([
            StockBatch(sku_id=skus["MILK-1L"].id, location_id=locations["ST-001"].id,
                       batch_code="MLK-2401", quantity=20, expiry_date=date.today() + timedelta(days=2)),
            StockBatch(sku_id=skus["YOG-500"].id, location_id=locations["HUB-SOUTH"].id,
                       batch_code="YOG-2407", quantity=30, expiry_date=date.today() + timedelta(days=6)),
        ])
        db.commit()
        print("✅ Sales velocity and batch metadata seeded")
    finally:
        db.close()


if __name__ == "__main__":
    seed()
