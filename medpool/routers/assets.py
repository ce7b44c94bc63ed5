from fastapi import APIRouter, Depends, Query, Response
from medpool.deps import get_ledger
from medpool.ledger import LedgerStore
from medpool.schemas.asset import Asset, AssetCreate, AssetUpdate
import medpool.services.asset_service as svc

router = APIRouter(prefix="/api/assets", tags=["assets"])


@router.get("", response_model=list[Asset])
def list_assets(search: str = Query(""), ledger: LedgerStore = Depends(get_ledger)):
    return svc.list_assets(ledger, search=search)


@router.post("", response_model=Asset, status_code=201)
def register_asset(data: AssetCreate, ledger: LedgerStore = Depends(get_ledger)):
    return ledger.register_asset(data)


@router.get("/{asset_id}", response_model=Asset)
def get_asset(asset_id: str, ledger: LedgerStore = Depends(get_ledger)):
    return svc.get_asset(ledger, asset_id)


@router.get("/{asset_id}/status")
def asset_status(asset_id: str, ledger: LedgerStore = Depends(get_ledger)):
    return {"asset_id": asset_id, "status": svc.get_asset_status(ledger, asset_id)}


@router.put("/{asset_id}", response_model=Asset)
def update_asset(asset_id: str, data: AssetUpdate, ledger: LedgerStore = Depends(get_ledger)):
    return ledger.update_asset(asset_id, data)


@router.delete("/{asset_id}", status_code=204)
def delete_asset(asset_id: str, ledger: LedgerStore = Depends(get_ledger)):
    ledger.delete_asset(asset_id)
    return Response(status_code=204)
