from medpool.exceptions import RecordNotFoundError
from medpool.ledger import LedgerStore
from medpool.schemas.asset import Asset
from medpool.services.invariants import has_active_loan


def list_assets(ledger: LedgerStore, search: str = "") -> list[Asset]:
    assets = list(ledger.assets)
    search = search.strip().lower()
    if not search:
        return assets
    return [
        a for a in assets
        if search in a.asset_id.lower()
        or search in a.id_code.lower()
        or search in a.name.lower()
        or search in a.serial.lower()
    ]


def get_asset(ledger: LedgerStore, asset_id: str) -> Asset:
    asset = ledger.find_asset(asset_id)
    if asset is None:
        raise RecordNotFoundError("Asset", asset_id)
    return asset


def get_asset_status(ledger: LedgerStore, asset_id: str) -> str:
    get_asset(ledger, asset_id)
    if has_active_loan(ledger.borrow_records, asset_id):
        return "borrowed"
    return "available"
