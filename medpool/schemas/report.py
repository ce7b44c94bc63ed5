from datetime import date
from pydantic import BaseModel, field_validator
from medpool.schemas._common import blank_to_none


class ReportFilter(BaseModel):
    date_from: date | None = None
    date_to: date | None = None
    department: str | None = None

    @field_validator("date_from", "date_to", "department", mode="before")
    @classmethod
    def empty_as_none(cls, value):
        return blank_to_none(value)


class DashboardSummary(BaseModel):
    borrowed: int
    available: int
    total: int
    overdue: int


class LedgerSettings(BaseModel):
    org_name: str
    report_logo: str


class SettingsUpdate(BaseModel):
    org_name: str | None = None
    report_logo: str | None = None
