"""Borrow/return desk: the collaborator that checks an asset is free before lending it."""
import logging
from datetime import datetime, timezone
from uuid import uuid4

from medpool.exceptions import BusyAssetError, RecordNotFoundError, ValidationError
from medpool.ledger import LedgerStore
from medpool.schemas.borrow import BorrowCreate, BorrowRecord
from medpool.services.invariants import find_missing_field, has_active_loan

logger = logging.getLogger(__name__)

_BORROW_REQUIRED_FIELDS = ("lender_name", "borrower_name", "start_date")


def borrow_asset(ledger: LedgerStore, data: BorrowCreate, now: datetime | None = None) -> BorrowRecord:
    # The lock covers check and write within this process; another process
    # may still lend the asset before our write lands.
    with ledger.locked():
        asset = ledger.find_asset(data.asset_id)
        if asset is None:
            raise ValidationError("asset_id", f"Asset ID '{data.asset_id}' not found")
        if has_active_loan(ledger.borrow_records, asset.asset_id):
            raise BusyAssetError(asset.asset_id)
        missing = find_missing_field(data.model_dump(), _BORROW_REQUIRED_FIELDS)
        if missing:
            raise ValidationError(missing, f"{missing} is required")
        if not data.borrower_sign:
            raise ValidationError("borrower_sign", "the borrower must sign before the loan is recorded")

        record = BorrowRecord(
            id=uuid4().hex,
            asset_id=asset.asset_id,
            asset_name=asset.name,
            peripherals=data.peripherals,
            lender_name=data.lender_name,
            borrower_name=data.borrower_name,
            borrower_dept=data.borrower_dept,
            start_date=data.start_date,
            end_date=data.end_date,
            returned_at=None,
            borrower_sign=data.borrower_sign,
            created_at=now or datetime.now(timezone.utc),
        )
        return ledger.record_borrow(record)


def return_asset(ledger: LedgerStore, record_id: str) -> BorrowRecord:
    with ledger.locked():
        record = ledger.find_borrow(record_id)
        if record is None:
            raise RecordNotFoundError("Borrow record", record_id)
        if not record.is_active:
            logger.info("Loan %s was already returned at %s", record_id, record.returned_at)
            return record
        return ledger.return_borrow(record_id)


def search_active(ledger: LedgerStore, keyword: str = "") -> list[BorrowRecord]:
    """Active loans matching ``keyword`` in asset id, asset name or borrower."""
    active = list(ledger.active_records)
    keyword = keyword.strip().lower()
    if not keyword:
        return active
    return [
        r for r in active
        if keyword in r.asset_id.lower()
        or keyword in (r.asset_name or "").lower()
        or keyword in (r.borrower_name or "").lower()
    ]
