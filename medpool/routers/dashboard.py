from fastapi import APIRouter, Depends
from medpool.deps import get_ledger
from medpool.ledger import LedgerStore
from medpool.schemas.report import DashboardSummary
from medpool.services.overdue import summarize

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("", response_model=DashboardSummary)
def dashboard(ledger: LedgerStore = Depends(get_ledger)):
    return summarize(ledger.assets, ledger.borrow_records)
