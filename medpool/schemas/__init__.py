from medpool.schemas.asset import Asset, AssetCreate, AssetUpdate
from medpool.schemas.borrow import BorrowRecord, BorrowCreate, BorrowUpdate
from medpool.schemas.reference import ModelEntry, QuickAdd, ModelQuickAdd, ReferenceLists
from medpool.schemas.report import ReportFilter, DashboardSummary, LedgerSettings, SettingsUpdate

__all__ = [
    "Asset", "AssetCreate", "AssetUpdate",
    "BorrowRecord", "BorrowCreate", "BorrowUpdate",
    "ModelEntry", "QuickAdd", "ModelQuickAdd", "ReferenceLists",
    "ReportFilter", "DashboardSummary", "LedgerSettings", "SettingsUpdate",
]
