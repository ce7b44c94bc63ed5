"""Pure checks run before the ledger commits a mutation."""
from typing import Any, Iterable, Mapping

from medpool.schemas.asset import Asset
from medpool.schemas.borrow import BorrowRecord
from medpool.schemas.reference import ModelEntry

ASSET_KEY_FIELDS = ("asset_id", "id_code", "serial")
ASSET_REQUIRED_FIELDS = ("asset_id", "id_code", "name", "serial")


def is_duplicate_key(assets: Iterable[Asset], field: str, value: Any, exclude_id: str | None = None) -> bool:
    """True if an asset other than ``exclude_id`` already has ``field == value``."""
    return any(
        getattr(a, field) == value and a.asset_id != exclude_id
        for a in assets
    )


def has_active_loan(borrow_records: Iterable[BorrowRecord], asset_id: str) -> bool:
    return any(r.asset_id == asset_id and r.returned_at is None for r in borrow_records)


def active_asset_ids(borrow_records: Iterable[BorrowRecord]) -> set[str]:
    return {r.asset_id for r in borrow_records if r.returned_at is None}


def find_missing_field(payload: Mapping[str, Any], fields: Iterable[str]) -> str | None:
    for field in fields:
        value = payload.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            return field
    return None


def find_duplicate_key(assets: Iterable[Asset], payload: Mapping[str, Any], exclude_id: str | None = None) -> str | None:
    assets = list(assets)
    for field in ASSET_KEY_FIELDS:
        if is_duplicate_key(assets, field, payload.get(field), exclude_id):
            return field
    return None


def model_registered(models: Iterable[ModelEntry], brand: str, model: str) -> bool:
    return any(m.brand == brand and m.name == model for m in models)
