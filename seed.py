"""Seed script: fills the ledger with demo equipment and loans."""
import os
import sys
from datetime import date, datetime, timedelta, timezone

# Ensure we're in the project root
sys.path.insert(0, os.path.dirname(__file__))

from medpool.database import Base, engine, SessionLocal
import medpool.models  # noqa: F401
from medpool.kv_store import SqlBackend, StoreHandle
from medpool.ledger import LedgerStore
from medpool.schemas.borrow import BorrowCreate
from medpool.services.borrow_service import borrow_asset

# 1x1 transparent PNG standing in for a captured signature
DEMO_SIGNATURE = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


def seed(ledger: LedgerStore, today: date | None = None) -> None:
    today = today or date.today()

    for brand, model in [("Philips", "IntelliVue MX450"), ("Mindray", "BeneHeart D3"), ("B. Braun", "Infusomat Space")]:
        ledger.add_brand(brand)
        ledger.add_model(brand, model)
    for vendor in ["MedSupply Co.", "Bangkok Medical"]:
        ledger.add_vendor(vendor)
    for dept in ["ICU", "ER", "OPD", "Ward 5"]:
        ledger.add_department(dept)

    assets = [
        dict(asset_id="MP-0001", id_code="ICU-MON-01", name="Patient monitor", brand="Philips",
             model="IntelliVue MX450", vendor="MedSupply Co.", serial="PH-450-1001",
             purchase_date="2023-03-01", price="185000"),
        dict(asset_id="MP-0002", id_code="ER-DEF-01", name="Defibrillator", brand="Mindray",
             model="BeneHeart D3", vendor="Bangkok Medical", serial="MR-D3-2201",
             purchase_date="2022-11-15", price="240000"),
        dict(asset_id="MP-0003", id_code="W5-INF-01", name="Infusion pump", brand="B. Braun",
             model="Infusomat Space", vendor="MedSupply Co.", serial="BB-IS-7781"),
        dict(asset_id="MP-0004", id_code="W5-INF-02", name="Infusion pump", brand="B. Braun",
             model="Infusomat Space", vendor="MedSupply Co.", serial="BB-IS-7782"),
    ]
    existing = {a.asset_id for a in ledger.assets}
    for payload in assets:
        if payload["asset_id"] not in existing:
            ledger.register_asset(payload)

    if ledger.borrow_records:
        return

    loans = [
        ("MP-0001", "ICU", "Somchai P.", 20),
        ("MP-0003", "Ward 5", "Kanya S.", 3),
        ("MP-0002", "ER", "Anan W.", 30),
    ]
    for asset_id, dept, borrower, days_ago in loans:
        borrow_asset(ledger, BorrowCreate(
            asset_id=asset_id,
            lender_name="Central pool",
            borrower_name=borrower,
            borrower_dept=dept,
            start_date=today - timedelta(days=days_ago),
            end_date=today - timedelta(days=days_ago) + timedelta(days=14),
            borrower_sign=DEMO_SIGNATURE,
        ))
    # The defibrillator came back after a week
    returned = next(r for r in ledger.borrow_records if r.asset_id == "MP-0002")
    ledger.update_borrow(returned.id, {
        "returned_at": datetime.combine(today - timedelta(days=23), datetime.min.time(), tzinfo=timezone.utc),
    })


if __name__ == "__main__":
    os.makedirs("data", exist_ok=True)
    Base.metadata.create_all(bind=engine)
    ledger = LedgerStore(StoreHandle(SqlBackend(SessionLocal)))
    seed(ledger)
    print(f"Seeded {len(ledger.assets)} assets and {len(ledger.borrow_records)} borrow records.")
