"""Unit tests for LedgerStore: asset register, loans, reference lists, sync."""
import threading
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from medpool.database import Base
from medpool.exceptions import BusyAssetError, ConcurrentModificationError, RecordNotFoundError, ValidationError
from medpool.kv_store import MemoryBackend, SqlBackend, StoreHandle
from medpool.ledger import LedgerStore, normalize_price
from medpool.schemas.asset import AssetCreate, AssetUpdate
from medpool.schemas.borrow import BorrowCreate
from medpool.services.borrow_service import borrow_asset, return_asset
from medpool.services.invariants import has_active_loan


def _borrow(ledger, signature, asset_id="A1", **extra):
    data = BorrowCreate(
        asset_id=asset_id,
        lender_name="Central pool",
        borrower_name="Somchai",
        borrower_dept="ICU",
        start_date=date(2024, 1, 1),
        borrower_sign=signature,
        **extra,
    )
    return borrow_asset(ledger, data)


# ─── Assets ──────────────────────────────────────────────────────────────────

def test_register_asset_prepends_and_persists(ledger, store, asset_payload):
    ledger.register_asset(asset_payload())
    ledger.register_asset(asset_payload(asset_id="A2", id_code="C2", serial="S2"))
    assert [a.asset_id for a in ledger.assets] == ["A2", "A1"]
    stored = store.get("mp:assets")
    assert [a["asset_id"] for a in stored] == ["A2", "A1"]


def test_register_asset_accepts_schema(ledger):
    asset = ledger.register_asset(AssetCreate(asset_id="A1", id_code="C1", name="Pump", serial="S1", price="1500.50"))
    assert asset.price == Decimal("1500.50")


@pytest.mark.parametrize("field", ["asset_id", "id_code", "name", "serial"])
def test_register_asset_requires_field(ledger, asset_payload, field):
    with pytest.raises(ValidationError) as exc:
        ledger.register_asset(asset_payload(**{field: "  "}))
    assert exc.value.field == field
    assert ledger.assets == ()


@pytest.mark.parametrize("field", ["asset_id", "id_code", "serial"])
def test_register_asset_rejects_duplicate_key(ledger, asset_payload, field):
    ledger.register_asset(asset_payload())
    other = asset_payload(asset_id="A2", id_code="C2", serial="S2")
    other[field] = asset_payload()[field]
    with pytest.raises(ValidationError) as exc:
        ledger.register_asset(other)
    assert exc.value.field == field
    assert len(ledger.assets) == 1


def test_register_asset_price_normalisation(ledger, asset_payload):
    assert ledger.register_asset(asset_payload(price="")).price is None
    with pytest.raises(ValidationError) as exc:
        ledger.register_asset(asset_payload(asset_id="A2", id_code="C2", serial="S2", price="abc"))
    assert exc.value.field == "price"


def test_normalize_price():
    assert normalize_price(None) is None
    assert normalize_price(" 12.5 ") == Decimal("12.5")
    assert normalize_price(300) == Decimal("300")


def test_register_asset_model_must_belong_to_brand(ledger, asset_payload):
    ledger.add_model("Philips", "MX450")
    with pytest.raises(ValidationError) as exc:
        ledger.register_asset(asset_payload(brand="Mindray", model="MX450"))
    assert exc.value.field == "model"
    asset = ledger.register_asset(asset_payload(brand="Philips", model="MX450"))
    assert asset.model == "MX450"


def test_update_asset_non_key_fields(ledger, asset_payload):
    ledger.register_asset(asset_payload())
    updated = ledger.update_asset("A1", {"name": "Syringe pump", "vendor": "MedSupply"})
    assert updated.name == "Syringe pump"
    assert ledger.find_asset("A1").vendor == "MedSupply"


def test_update_asset_keeping_own_keys_succeeds(ledger, asset_payload):
    ledger.register_asset(asset_payload())
    updated = ledger.update_asset("A1", AssetUpdate(serial="S1", name="Renamed"))
    assert updated.serial == "S1"


def test_update_asset_key_collision_fails(ledger, asset_payload):
    ledger.register_asset(asset_payload())
    ledger.register_asset(asset_payload(asset_id="A2", id_code="C2", serial="S2"))
    with pytest.raises(ValidationError) as exc:
        ledger.update_asset("A2", {"serial": "S1"})
    assert exc.value.field == "serial"
    assert ledger.find_asset("A2").serial == "S2"


def test_update_asset_unknown_id(ledger):
    with pytest.raises(RecordNotFoundError):
        ledger.update_asset("nope", {"name": "x"})


def test_delete_asset(ledger, asset_payload):
    ledger.register_asset(asset_payload())
    ledger.delete_asset("A1")
    ledger.delete_asset("A1")
    assert ledger.assets == ()


# ─── Borrow / return ─────────────────────────────────────────────────────────

def test_borrow_return_borrow_cycle(ledger, asset_payload, signature):
    ledger.register_asset(asset_payload())
    first = _borrow(ledger, signature)
    assert first.asset_name == "Infusion pump"
    assert has_active_loan(ledger.borrow_records, "A1")

    with pytest.raises(BusyAssetError):
        _borrow(ledger, signature)

    returned = return_asset(ledger, first.id)
    assert returned.returned_at is not None
    assert not has_active_loan(ledger.borrow_records, "A1")

    second = _borrow(ledger, signature)
    assert [r.id for r in ledger.borrow_records] == [second.id, first.id]


def test_borrow_unknown_asset(ledger, signature):
    with pytest.raises(ValidationError) as exc:
        _borrow(ledger, signature, asset_id="ghost")
    assert exc.value.field == "asset_id"


def test_borrow_requires_signature(ledger, asset_payload):
    ledger.register_asset(asset_payload())
    with pytest.raises(ValidationError) as exc:
        _borrow(ledger, "")
    assert exc.value.field == "borrower_sign"
    assert ledger.borrow_records == ()


def test_borrow_requires_borrower(ledger, asset_payload, signature):
    ledger.register_asset(asset_payload())
    data = BorrowCreate(asset_id="A1", lender_name="Pool", borrower_sign=signature)
    with pytest.raises(ValidationError) as exc:
        borrow_asset(ledger, data)
    assert exc.value.field == "borrower_name"


def test_record_borrow_skips_active_loan_check(ledger, asset_payload, signature):
    ledger.register_asset(asset_payload())
    first = _borrow(ledger, signature)
    duplicate = first.model_dump()
    duplicate["id"] = "manual"
    ledger.record_borrow(duplicate)
    assert len(ledger.active_records) == 2


def test_return_is_idempotent(ledger, asset_payload, signature):
    ledger.register_asset(asset_payload())
    record = _borrow(ledger, signature)
    first = return_asset(ledger, record.id)
    second = return_asset(ledger, record.id)
    assert first.returned_at == second.returned_at


def test_update_borrow_can_set_returned_at(ledger, asset_payload, signature):
    ledger.register_asset(asset_payload())
    record = _borrow(ledger, signature)
    when = datetime(2024, 1, 5, 9, 30, tzinfo=timezone.utc)
    updated = ledger.update_borrow(record.id, {"returned_at": when, "peripherals": "charger"})
    assert updated.returned_at == when
    assert updated.peripherals == "charger"
    assert ledger.active_records == ()


def test_update_borrow_rejects_bad_types(ledger, asset_payload, signature):
    ledger.register_asset(asset_payload())
    record = _borrow(ledger, signature)
    with pytest.raises(ValidationError) as exc:
        ledger.update_borrow(record.id, {"start_date": "not a date"})
    assert exc.value.field == "start_date"


def test_return_unknown_record(ledger):
    with pytest.raises(RecordNotFoundError):
        return_asset(ledger, "missing")
    with pytest.raises(RecordNotFoundError):
        ledger.return_borrow("missing")


# ─── Reference lists & settings ──────────────────────────────────────────────

def test_quick_add_grows_without_duplicates(ledger):
    assert ledger.add_brand(" Philips ") == "Philips"
    ledger.add_brand("Philips")
    assert ledger.add_brand("   ") is None
    ledger.add_vendor("MedSupply")
    ledger.add_department("ICU")
    ledger.add_department("ER")
    assert ledger.brands == ("Philips",)
    assert ledger.vendors == ("MedSupply",)
    assert ledger.departments == ("ICU", "ER")


def test_add_model_needs_brand(ledger):
    with pytest.raises(ValidationError) as exc:
        ledger.add_model("", "MX450")
    assert exc.value.field == "brand"
    ledger.add_model("Philips", "MX450")
    ledger.add_model("Philips", "MX450")
    ledger.add_model("Mindray", "D3")
    assert ledger.models_for("Philips") == ["MX450"]
    assert len(ledger.models) == 2


def test_settings_default_and_update(ledger, store):
    assert ledger.org_name == "Hospital Name"
    assert ledger.report_logo == ""
    ledger.set_org_name("St. Mary")
    ledger.set_report_logo("data:image/png;base64,AAAA")
    assert store.get("mp:org_name") == "St. Mary"
    assert ledger.report_logo == "data:image/png;base64,AAAA"


def test_reset_clears_namespace(ledger, store, asset_payload):
    store.set("other:assets", [])
    ledger.register_asset(asset_payload())
    ledger.add_brand("Philips")
    ledger.set_org_name("St. Mary")
    ledger.reset()
    assert ledger.assets == ()
    assert ledger.brands == ()
    assert ledger.org_name == "Hospital Name"
    assert store.keys("mp:") == []
    assert store.keys("other:") == ["other:assets"]


# ─── Loading & cross-context propagation ─────────────────────────────────────

def test_new_context_loads_persisted_state(backend, ledger, asset_payload):
    ledger.register_asset(asset_payload())
    ledger.add_department("ICU")
    other = LedgerStore(StoreHandle(backend), namespace="mp")
    assert [a.asset_id for a in other.assets] == ["A1"]
    assert other.departments == ("ICU",)


def test_malformed_slice_loads_empty(backend):
    backend.write("mp:assets", '[{"unexpected": 1}]')
    backend.write("mp:brands", "not json")
    ledger = LedgerStore(StoreHandle(backend), namespace="mp")
    assert ledger.assets == ()
    assert ledger.brands == ()


def test_other_context_sees_change_writer_is_not_notified_twice(backend, asset_payload):
    writer = LedgerStore(StoreHandle(backend), namespace="mp")
    reader = LedgerStore(StoreHandle(backend), namespace="mp")
    writer_events, reader_events = [], []
    writer.on_change(writer_events.append)
    reader.on_change(reader_events.append)

    writer.register_asset(asset_payload())

    assert writer_events == ["assets"]
    assert reader_events == ["assets"]
    assert [a.asset_id for a in reader.assets] == ["A1"]


def test_closed_context_stops_receiving(backend, asset_payload):
    writer = LedgerStore(StoreHandle(backend), namespace="mp")
    reader = LedgerStore(StoreHandle(backend), namespace="mp")
    reader.close()
    writer.register_asset(asset_payload())
    assert reader.assets == ()


def test_sync_across_processes(sql_session_factory):
    a = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp")
    b = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp")
    a.add_brand("Philips")
    assert b.brands == ()
    assert b.sync() == ["mp:brands"]
    assert b.brands == ("Philips",)


def test_last_writer_wins_by_default(sql_session_factory):
    a = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp", optimistic=False)
    b = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp", optimistic=False)
    a.add_brand("Philips")
    b.add_brand("Mindray")
    assert b.brands == ("Mindray",)
    fresh = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp")
    assert fresh.brands == ("Mindray",)


def test_optimistic_writes_reject_stale_snapshot(sql_session_factory):
    a = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp", optimistic=True)
    b = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp", optimistic=True)
    a.add_brand("Philips")

    with pytest.raises(ConcurrentModificationError):
        b.add_brand("Mindray")
    assert b.brands == ()

    b.sync()
    b.add_brand("Mindray")
    assert b.brands == ("Philips", "Mindray")


class _BrokenBackend(MemoryBackend):
    def write(self, key, raw, expected_version=None):
        raise SQLAlchemyError("disk full")


def test_persistence_failure_keeps_memory_state(asset_payload):
    ledger = LedgerStore(StoreHandle(_BrokenBackend()), namespace="mp")
    ledger.register_asset(asset_payload())
    assert [a.asset_id for a in ledger.assets] == ["A1"]


def test_changing_brand_clears_model(ledger, asset_payload):
    ledger.add_model("Philips", "MX450")
    ledger.register_asset(asset_payload(brand="Philips", model="MX450"))
    updated = ledger.update_asset("A1", {"brand": "GE"})
    assert updated.brand == "GE"
    assert updated.model == ""
    # Same brand keeps the model
    ledger.update_asset("A1", {"brand": "Philips", "model": "MX450"})
    assert ledger.update_asset("A1", {"brand": "Philips"}).model == "MX450"


def test_namespace_with_colon(backend, asset_payload):
    writer = LedgerStore(StoreHandle(backend), namespace="site:a")
    reader = LedgerStore(StoreHandle(backend), namespace="site:a")
    writer.register_asset(asset_payload())
    writer.set_org_name("Ward A")
    assert [a.asset_id for a in reader.assets] == ["A1"]
    assert reader.org_name == "Ward A"


# ─── Reset across contexts ───────────────────────────────────────────────────

def test_reset_reaches_other_context_in_process(backend, asset_payload):
    a = LedgerStore(StoreHandle(backend), namespace="mp")
    b = LedgerStore(StoreHandle(backend), namespace="mp")
    a.register_asset(asset_payload())
    a.set_org_name("St. Mary")
    a.reset()
    assert b.assets == ()
    assert b.org_name == "Hospital Name"


def test_reset_then_rewrite_converges_across_processes(sql_session_factory, asset_payload):
    a = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp")
    b = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp")
    a.register_asset(asset_payload(asset_id="OLD", id_code="C-OLD", serial="S-OLD"))
    b.sync()
    assert [x.asset_id for x in b.assets] == ["OLD"]

    a.reset()
    a.register_asset(asset_payload(asset_id="NEW", id_code="C-NEW", serial="S-NEW"))
    b.sync()

    assert [x.asset_id for x in b.assets] == ["NEW"]


def test_optimistic_writes_recover_after_reset(sql_session_factory):
    a = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp", optimistic=True)
    b = LedgerStore(StoreHandle(SqlBackend(sql_session_factory)), namespace="mp", optimistic=True)
    a.add_brand("X")
    b.sync()
    b.reset()
    a.sync()
    assert a.brands == ()
    a.add_brand("Y")
    assert a.brands == ("Y",)
    b.sync()
    b.add_brand("Z")
    assert b.brands == ("Y", "Z")


# ─── Threads ─────────────────────────────────────────────────────────────────

def _run_together(workers, target):
    barrier = threading.Barrier(workers)
    errors = []

    def run(i):
        barrier.wait()
        try:
            target(i)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def test_concurrent_registrations_are_all_kept(tmp_path, asset_payload):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    ledger = LedgerStore(StoreHandle(SqlBackend(factory)), namespace="mp")

    errors = _run_together(8, lambda i: ledger.register_asset(
        asset_payload(asset_id=f"A{i}", id_code=f"C{i}", serial=f"S{i}")
    ))

    assert errors == []
    assert len(ledger.assets) == 8
    reloaded = LedgerStore(StoreHandle(SqlBackend(factory)), namespace="mp")
    assert sorted(a.asset_id for a in reloaded.assets) == [f"A{i}" for i in range(8)]
    engine.dispose()


def test_concurrent_duplicate_registration_keeps_one(ledger, asset_payload):
    errors = _run_together(8, lambda i: ledger.register_asset(asset_payload()))
    assert len(ledger.assets) == 1
    assert len(errors) == 7
    assert all(isinstance(e, ValidationError) for e in errors)


def test_concurrent_borrows_of_one_asset(ledger, asset_payload, signature):
    ledger.register_asset(asset_payload())
    errors = _run_together(8, lambda i: _borrow(ledger, signature))
    assert len(ledger.active_records) == 1
    assert len(errors) == 7
    assert all(isinstance(e, BusyAssetError) for e in errors)
