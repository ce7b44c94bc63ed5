from typing import Literal
from fastapi import APIRouter, Depends, Query
from medpool.deps import get_ledger
from medpool.exceptions import RecordNotFoundError
from medpool.ledger import LedgerStore
from medpool.schemas.borrow import BorrowCreate, BorrowRecord, BorrowUpdate
from medpool.services.overdue import partition_active
import medpool.services.borrow_service as svc

router = APIRouter(prefix="/api/borrows", tags=["borrows"])


@router.get("", response_model=list[BorrowRecord])
def list_borrows(
    status: Literal["all", "active", "returned"] = Query("all"),
    ledger: LedgerStore = Depends(get_ledger),
):
    records = ledger.borrow_records
    if status == "active":
        return [r for r in records if r.is_active]
    if status == "returned":
        return [r for r in records if not r.is_active]
    return list(records)


@router.get("/active", response_model=list[BorrowRecord])
def search_active(search: str = Query(""), ledger: LedgerStore = Depends(get_ledger)):
    return svc.search_active(ledger, search)


@router.get("/overdue")
def overdue_buckets(ledger: LedgerStore = Depends(get_ledger)):
    overdue, normal = partition_active(ledger.borrow_records)
    return {
        "overdue": [r.model_dump(mode="json") for r in overdue],
        "normal": [r.model_dump(mode="json") for r in normal],
    }


@router.post("", response_model=BorrowRecord, status_code=201)
def borrow_asset(data: BorrowCreate, ledger: LedgerStore = Depends(get_ledger)):
    return svc.borrow_asset(ledger, data)


@router.get("/{record_id}", response_model=BorrowRecord)
def get_borrow(record_id: str, ledger: LedgerStore = Depends(get_ledger)):
    record = ledger.find_borrow(record_id)
    if record is None:
        raise RecordNotFoundError("Borrow record", record_id)
    return record


@router.put("/{record_id}", response_model=BorrowRecord)
def update_borrow(record_id: str, data: BorrowUpdate, ledger: LedgerStore = Depends(get_ledger)):
    return ledger.update_borrow(record_id, data)


@router.post("/{record_id}/return", response_model=BorrowRecord)
def return_borrow(record_id: str, ledger: LedgerStore = Depends(get_ledger)):
    return svc.return_asset(ledger, record_id)
