"""
Lending ledger: the single owner of assets, borrow records and reference lists.

Every collection lives under ``<namespace>:<slice>`` in the shared key-value
store. The ledger keeps an in-memory read model per context, seeded on
construction, replaced wholesale when another context writes a slice, and
updated synchronously by its own mutations (write-through, last writer wins).
"""
import functools
import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from medpool.config import settings
from medpool.exceptions import ConcurrentModificationError, RecordNotFoundError, ValidationError
from medpool.kv_store import StoreHandle
from medpool.schemas.asset import Asset
from medpool.schemas.borrow import BorrowRecord
from medpool.schemas.reference import ModelEntry
from medpool.services.invariants import (
    ASSET_REQUIRED_FIELDS,
    find_duplicate_key,
    find_missing_field,
    model_registered,
)

logger = logging.getLogger(__name__)

SLICES = ("brands", "models", "vendors", "departments", "assets", "borrow_records")
SETTING_KEYS = ("org_name", "report_logo")

_ADAPTERS = {
    "brands": TypeAdapter(list[str]),
    "models": TypeAdapter(list[ModelEntry]),
    "vendors": TypeAdapter(list[str]),
    "departments": TypeAdapter(list[str]),
    "assets": TypeAdapter(list[Asset]),
    "borrow_records": TypeAdapter(list[BorrowRecord]),
}


def _locked(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.locked():
            return method(self, *args, **kwargs)
    return wrapper


def normalize_price(value: Any) -> Decimal | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("price", f"price '{value}' is not a number")


class LedgerStore:
    def __init__(
        self,
        store: StoreHandle,
        namespace: str | None = None,
        optimistic: bool | None = None,
        default_org_name: str | None = None,
    ) -> None:
        self.store = store
        self.namespace = namespace or settings.STORE_NAMESPACE
        self.optimistic = settings.OPTIMISTIC_WRITES if optimistic is None else optimistic
        self.default_org_name = default_org_name or settings.DEFAULT_ORG_NAME
        self._state: dict[str, list] = {}
        self._org_name = self.default_org_name
        self._report_logo = ""
        self._versions: dict[str, int] = {}
        self._listeners: list[Callable[[str], None]] = []
        # Mutations of one context are serialised; changes from other contexts
        # that arrive while the lock is held are queued and applied after it
        self.lock = threading.RLock()
        self._pending: deque[tuple[str, Any]] = deque()
        self.load()
        self._unsubscribers = [
            store.subscribe(self.key(name), self._on_external_change)
            for name in SLICES + SETTING_KEYS
        ]

    def key(self, name: str) -> str:
        return f"{self.namespace}:{name}"

    # ── Read model ────────────────────────────────────────────────────────────

    @property
    def assets(self) -> tuple[Asset, ...]:
        return tuple(self._state["assets"])

    @property
    def borrow_records(self) -> tuple[BorrowRecord, ...]:
        return tuple(self._state["borrow_records"])

    @property
    def active_records(self) -> tuple[BorrowRecord, ...]:
        return tuple(r for r in self._state["borrow_records"] if r.is_active)

    @property
    def brands(self) -> tuple[str, ...]:
        return tuple(self._state["brands"])

    @property
    def models(self) -> tuple[ModelEntry, ...]:
        return tuple(self._state["models"])

    @property
    def vendors(self) -> tuple[str, ...]:
        return tuple(self._state["vendors"])

    @property
    def departments(self) -> tuple[str, ...]:
        return tuple(self._state["departments"])

    @property
    def org_name(self) -> str:
        return self._org_name

    @property
    def report_logo(self) -> str:
        return self._report_logo

    def models_for(self, brand: str) -> list[str]:
        return [m.name for m in self._state["models"] if m.brand == brand]

    def find_asset(self, asset_id: str) -> Asset | None:
        return next((a for a in self._state["assets"] if a.asset_id == asset_id), None)

    def find_borrow(self, record_id: str) -> BorrowRecord | None:
        return next((r for r in self._state["borrow_records"] if r.id == record_id), None)

    # ── Assets ────────────────────────────────────────────────────────────────

    @_locked
    def register_asset(self, payload: BaseModel | Mapping[str, Any]) -> Asset:
        data = self._as_dict(payload)
        missing = find_missing_field(data, ASSET_REQUIRED_FIELDS)
        if missing:
            raise ValidationError(missing, f"{missing} is required")
        duplicate = find_duplicate_key(self._state["assets"], data)
        if duplicate:
            raise ValidationError(duplicate, f"{duplicate} '{data[duplicate]}' already exists")
        data["price"] = normalize_price(data.get("price"))
        self._check_model(data)

        asset = self._build(Asset, data)
        self._commit("assets", [asset, *self._state["assets"]])
        logger.info("Registered asset %s (%s)", asset.asset_id, asset.name)
        return asset

    @_locked
    def update_asset(self, asset_id: str, patch: BaseModel | Mapping[str, Any]) -> Asset:
        current = self.find_asset(asset_id)
        if current is None:
            raise RecordNotFoundError("Asset", asset_id)
        changes = self._as_dict(patch, partial=True)
        merged = {**current.model_dump(), **changes}

        missing = find_missing_field(merged, ASSET_REQUIRED_FIELDS)
        if missing:
            raise ValidationError(missing, f"{missing} is required")
        duplicate = find_duplicate_key(self._state["assets"], merged, exclude_id=asset_id)
        if duplicate:
            raise ValidationError(duplicate, f"{duplicate} '{merged[duplicate]}' already exists")
        if "price" in changes:
            merged["price"] = normalize_price(changes["price"])
        if changes.get("brand") is not None and changes["brand"] != current.brand and "model" not in changes:
            # A model belongs to one brand; switching brand drops it
            merged["model"] = ""
        if "brand" in changes or "model" in changes:
            self._check_model(merged)

        updated = self._build(Asset, merged)
        self._commit("assets", [updated if a.asset_id == asset_id else a for a in self._state["assets"]])
        logger.info("Updated asset %s", asset_id)
        return updated

    @_locked
    def delete_asset(self, asset_id: str) -> None:
        # Borrow records keep their asset_name snapshot; nothing cascades
        remaining = [a for a in self._state["assets"] if a.asset_id != asset_id]
        if len(remaining) == len(self._state["assets"]):
            return
        self._commit("assets", remaining)
        logger.info("Deleted asset %s", asset_id)

    # ── Borrow records ────────────────────────────────────────────────────────

    @_locked
    def record_borrow(self, record: BorrowRecord | Mapping[str, Any]) -> BorrowRecord:
        """Prepend a loan. The caller has already checked the asset is free."""
        if not isinstance(record, BorrowRecord):
            record = self._build(BorrowRecord, dict(record))
        self._commit("borrow_records", [record, *self._state["borrow_records"]])
        logger.info("Recorded loan %s of asset %s to %s", record.id, record.asset_id, record.borrower_name)
        return record

    @_locked
    def update_borrow(self, record_id: str, patch: BaseModel | Mapping[str, Any]) -> BorrowRecord:
        current = self.find_borrow(record_id)
        if current is None:
            raise RecordNotFoundError("Borrow record", record_id)
        merged = {**current.model_dump(), **self._as_dict(patch, partial=True)}
        updated = self._build(BorrowRecord, merged)
        self._commit(
            "borrow_records",
            [updated if r.id == record_id else r for r in self._state["borrow_records"]],
        )
        return updated

    @_locked
    def return_borrow(self, record_id: str) -> BorrowRecord:
        record = self.update_borrow(record_id, {"returned_at": datetime.now(timezone.utc)})
        logger.info("Returned loan %s of asset %s", record.id, record.asset_id)
        return record

    # ── Reference lists (quick add, grow only) ────────────────────────────────

    @_locked
    def add_brand(self, value: str) -> str | None:
        return self._add_unique("brands", value)

    @_locked
    def add_vendor(self, value: str) -> str | None:
        return self._add_unique("vendors", value)

    @_locked
    def add_department(self, value: str) -> str | None:
        return self._add_unique("departments", value)

    @_locked
    def add_model(self, brand: str, name: str) -> ModelEntry | None:
        brand = (brand or "").strip()
        if not brand:
            raise ValidationError("brand", "select a brand before adding a model")
        name = (name or "").strip()
        if not name:
            return None
        entry = ModelEntry(brand=brand, name=name)
        if entry not in self._state["models"]:
            self._commit("models", [*self._state["models"], entry])
        return entry

    # ── Settings ──────────────────────────────────────────────────────────────

    @_locked
    def set_org_name(self, value: str) -> None:
        self._persist(self.key("org_name"), value)
        self._org_name = value
        self._notify("org_name")

    @_locked
    def set_report_logo(self, value: str) -> None:
        self._persist(self.key("report_logo"), value)
        self._report_logo = value
        self._notify("report_logo")

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @_locked
    def load(self) -> None:
        for name in SLICES:
            self._state[name] = self._parse_slice(name, self.store.get(self.key(name), []))
            self._versions[self.key(name)] = self.store.seen_version(self.key(name))
        org_name = self.store.get(self.key("org_name"))
        self._org_name = org_name if isinstance(org_name, str) else self.default_org_name
        logo = self.store.get(self.key("report_logo"))
        self._report_logo = logo if isinstance(logo, str) else ""
        for name in SETTING_KEYS:
            self._versions[self.key(name)] = self.store.seen_version(self.key(name))

    @_locked
    def sync(self) -> list[str]:
        """Pick up slices other processes wrote since the last look."""
        return self.store.poll()

    @_locked
    def reset(self) -> None:
        """Drop every entry under the namespace and reload defaults."""
        prefix = f"{self.namespace}:"
        for key in self.store.keys(prefix):
            self.store.delete(key)
        self._versions.clear()
        self.load()
        logger.warning("Ledger namespace '%s' was reset", self.namespace)
        for name in SLICES + SETTING_KEYS:
            self._notify(name)

    def on_change(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    @contextmanager
    def locked(self):
        """Hold the mutation lock, e.g. across a check-then-write done by a caller."""
        try:
            with self.lock:
                yield self
        finally:
            self._apply_pending()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._listeners.clear()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _on_external_change(self, key: str, value: Any) -> None:
        self._pending.append((key, value))
        self._apply_pending()

    def _apply_pending(self) -> None:
        while self._pending:
            if not self.lock.acquire(blocking=False):
                # The holder drains the queue when it releases the lock
                return
            try:
                while self._pending:
                    self._apply_external(*self._pending.popleft())
            finally:
                self.lock.release()

    def _apply_external(self, key: str, value: Any) -> None:
        name = key[len(self.namespace) + 1:]
        self._versions[key] = self.store.seen_version(key)
        if name == "org_name":
            self._org_name = value if isinstance(value, str) else self.default_org_name
        elif name == "report_logo":
            self._report_logo = value if isinstance(value, str) else ""
        else:
            self._state[name] = self._parse_slice(name, value)
        logger.debug("Applied external change to %s", key)
        self._notify(name)

    def _parse_slice(self, name: str, value: Any) -> list:
        if value is None:
            return []
        try:
            return list(_ADAPTERS[name].validate_python(value))
        except PydanticValidationError:
            logger.warning("Stored %s is malformed, starting from an empty list", self.key(name))
            return []

    def _commit(self, name: str, items: list) -> None:
        payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in items]
        self._persist(self.key(name), payload)
        self._state[name] = list(items)
        self._notify(name)

    def _persist(self, key: str, value: Any) -> None:
        expected = self._versions.get(key, 0) if self.optimistic else None
        try:
            version = self.store.set(key, value, expected_version=expected)
        except ConcurrentModificationError:
            logger.warning("Rejected stale write to %s", key)
            raise
        except SQLAlchemyError:
            logger.exception("Could not persist %s, keeping the in-memory change", key)
            return
        self._versions[key] = version

    def _notify(self, name: str) -> None:
        for callback in list(self._listeners):
            callback(name)

    def _add_unique(self, name: str, value: str) -> str | None:
        value = (value or "").strip()
        if not value:
            return None
        if value not in self._state[name]:
            self._commit(name, [*self._state[name], value])
        return value

    def _check_model(self, data: Mapping[str, Any]) -> None:
        model = (data.get("model") or "").strip()
        if model and not model_registered(self._state["models"], data.get("brand") or "", model):
            raise ValidationError("model", f"model '{model}' is not registered under brand '{data.get('brand') or ''}'")

    @staticmethod
    def _as_dict(payload: BaseModel | Mapping[str, Any], partial: bool = False) -> dict:
        if isinstance(payload, BaseModel):
            return payload.model_dump(exclude_unset=partial)
        return dict(payload)

    @staticmethod
    def _build(model: type[BaseModel], data: dict) -> Any:
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            error = exc.errors()[0]
            field = str(error["loc"][0]) if error["loc"] else model.__name__
            raise ValidationError(field, f"{field}: {error['msg']}") from exc
