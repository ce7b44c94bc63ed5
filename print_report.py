"""Print the borrow/return report: renders it and opens it in the browser's print view."""
import argparse
import os
import sys
from datetime import date

# Ensure we're in the project root
sys.path.insert(0, os.path.dirname(__file__))

from medpool.exceptions import PresentationError
from medpool.ledger import LedgerStore
from medpool.schemas.report import ReportFilter
from medpool.services.report_service import filter_records, present_printable, render_printable


def _parse_args(argv):
    parser = argparse.ArgumentParser(description="Open the borrow/return report for printing.")
    parser.add_argument("--from", dest="date_from", type=date.fromisoformat, help="first start date (YYYY-MM-DD)")
    parser.add_argument("--to", dest="date_to", type=date.fromisoformat, help="last start date (YYYY-MM-DD)")
    parser.add_argument("--department", help="only loans to this department")
    return parser.parse_args(argv)


def _open_ledger() -> LedgerStore:
    from medpool.database import Base, engine, SessionLocal
    import medpool.models  # noqa: F401
    from medpool.kv_store import SqlBackend, StoreHandle

    Base.metadata.create_all(bind=engine)
    return LedgerStore(StoreHandle(SqlBackend(SessionLocal)))


def main(argv=None, ledger: LedgerStore | None = None, opener=None) -> int:
    args = _parse_args(argv)
    ledger = ledger or _open_ledger()
    records = filter_records(
        ledger.borrow_records,
        ReportFilter(date_from=args.date_from, date_to=args.date_to, department=args.department),
    )
    html = render_printable(records, ledger.org_name, ledger.report_logo)
    try:
        path = present_printable(html, opener=opener)
    except PresentationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Opened report with {len(records)} records: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
