from datetime import date
from decimal import Decimal
from pydantic import BaseModel, field_serializer, field_validator
from medpool.schemas._common import blank_to_none


class Asset(BaseModel):
    asset_id: str
    id_code: str
    name: str
    brand: str = ""
    model: str = ""
    vendor: str = ""
    serial: str
    purchase_date: date | None = None
    price: Decimal | None = None

    model_config = {"frozen": True, "from_attributes": True}

    @field_validator("purchase_date", "price", mode="before")
    @classmethod
    def empty_as_none(cls, value):
        return blank_to_none(value)

    @field_serializer("price", when_used="json")
    def _price_as_number(self, price: Decimal | None) -> float | None:
        return float(price) if price is not None else None


class AssetCreate(BaseModel):
    asset_id: str = ""
    id_code: str = ""
    name: str = ""
    brand: str = ""
    model: str = ""
    vendor: str = ""
    serial: str = ""
    purchase_date: date | None = None
    price: Decimal | str | None = None

    @field_validator("purchase_date", mode="before")
    @classmethod
    def empty_as_none(cls, value):
        return blank_to_none(value)


class AssetUpdate(BaseModel):
    asset_id: str | None = None
    id_code: str | None = None
    name: str | None = None
    brand: str | None = None
    model: str | None = None
    vendor: str | None = None
    serial: str | None = None
    purchase_date: date | None = None
    price: Decimal | str | None = None

    @field_validator("purchase_date", mode="before")
    @classmethod
    def empty_as_none(cls, value):
        return blank_to_none(value)
