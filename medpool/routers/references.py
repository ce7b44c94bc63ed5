from fastapi import APIRouter, Depends, Query
from medpool.deps import get_ledger
from medpool.exceptions import ValidationError
from medpool.ledger import LedgerStore
from medpool.schemas.reference import ModelEntry, ModelQuickAdd, QuickAdd, ReferenceLists

router = APIRouter(prefix="/api/references", tags=["references"])


def _added(value, field: str):
    if value is None:
        raise ValidationError(field, f"{field} must not be blank")
    return value


@router.get("", response_model=ReferenceLists)
def list_references(ledger: LedgerStore = Depends(get_ledger)):
    return ReferenceLists(
        brands=list(ledger.brands),
        models=list(ledger.models),
        vendors=list(ledger.vendors),
        departments=list(ledger.departments),
    )


@router.get("/models", response_model=list[str])
def models_for_brand(brand: str = Query(...), ledger: LedgerStore = Depends(get_ledger)):
    return ledger.models_for(brand)


@router.post("/brands", status_code=201)
def add_brand(data: QuickAdd, ledger: LedgerStore = Depends(get_ledger)):
    return {"value": _added(ledger.add_brand(data.value), "brand")}


@router.post("/models", response_model=ModelEntry, status_code=201)
def add_model(data: ModelQuickAdd, ledger: LedgerStore = Depends(get_ledger)):
    return _added(ledger.add_model(data.brand, data.name), "name")


@router.post("/vendors", status_code=201)
def add_vendor(data: QuickAdd, ledger: LedgerStore = Depends(get_ledger)):
    return {"value": _added(ledger.add_vendor(data.value), "vendor")}


@router.post("/departments", status_code=201)
def add_department(data: QuickAdd, ledger: LedgerStore = Depends(get_ledger)):
    return {"value": _added(ledger.add_department(data.value), "department")}
