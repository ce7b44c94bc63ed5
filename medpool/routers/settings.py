from fastapi import APIRouter, Depends
from medpool.deps import get_ledger
from medpool.ledger import LedgerStore
from medpool.schemas.report import LedgerSettings, SettingsUpdate

router = APIRouter(prefix="/api/settings", tags=["settings"])


def _current(ledger: LedgerStore) -> LedgerSettings:
    return LedgerSettings(org_name=ledger.org_name, report_logo=ledger.report_logo)


@router.get("", response_model=LedgerSettings)
def get_settings(ledger: LedgerStore = Depends(get_ledger)):
    return _current(ledger)


@router.put("", response_model=LedgerSettings)
def update_settings(data: SettingsUpdate, ledger: LedgerStore = Depends(get_ledger)):
    if data.org_name is not None:
        ledger.set_org_name(data.org_name)
    if data.report_logo is not None:
        ledger.set_report_logo(data.report_logo)
    return _current(ledger)


@router.post("/reset", response_model=LedgerSettings)
def reset_ledger(ledger: LedgerStore = Depends(get_ledger)):
    ledger.reset()
    return _current(ledger)
