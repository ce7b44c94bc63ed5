from datetime import date, datetime
from pydantic import BaseModel, Field, field_validator
from medpool.schemas._common import blank_to_none


class BorrowRecord(BaseModel):
    """One loan of one asset. ``returned_at is None`` means the loan is active."""

    id: str
    asset_id: str
    # Snapshot of the asset name when the loan was recorded
    asset_name: str = ""
    peripherals: str = ""
    lender_name: str
    borrower_name: str
    borrower_dept: str = ""
    start_date: date
    end_date: date | None = None
    returned_at: datetime | None = None
    borrower_sign: str | None = None
    created_at: datetime

    model_config = {"frozen": True, "from_attributes": True}

    @field_validator("end_date", "returned_at", mode="before")
    @classmethod
    def empty_as_none(cls, value):
        return blank_to_none(value)

    @property
    def is_active(self) -> bool:
        return self.returned_at is None


class BorrowCreate(BaseModel):
    asset_id: str = Field(..., min_length=1)
    peripherals: str = ""
    lender_name: str = ""
    borrower_name: str = ""
    borrower_dept: str = ""
    start_date: date | None = Field(default_factory=date.today)
    end_date: date | None = None
    borrower_sign: str | None = None

    @field_validator("start_date", "end_date", "borrower_sign", mode="before")
    @classmethod
    def empty_as_none(cls, value):
        return blank_to_none(value)


class BorrowUpdate(BaseModel):
    asset_name: str | None = None
    peripherals: str | None = None
    lender_name: str | None = None
    borrower_name: str | None = None
    borrower_dept: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    returned_at: datetime | None = None
    borrower_sign: str | None = None
