"""
Report engine: filtering and projecting borrow records into report rows,
and rendering the printable HTML document.

Spreadsheet and PDF serialisation live in ``export_service``.
"""
import logging
import os
import tempfile
import webbrowser
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from fastapi.templating import Jinja2Templates

from medpool.config import settings
from medpool.exceptions import PresentationError
from medpool.schemas.borrow import BorrowRecord
from medpool.schemas.report import ReportFilter
from medpool.services.overdue import elapsed_days, to_local_date

logger = logging.getLogger(__name__)

COLUMNS = [
    "Asset ID", "Equipment Name", "Borrower", "Department", "Lender",
    "Start Date", "Due Date", "Returned Date", "Duration (days)", "Signature",
]
COLUMN_WIDTHS = [12, 22, 16, 10, 14, 12, 12, 12, 12, 10]

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))


def filter_records(records: Iterable[BorrowRecord], report_filter: ReportFilter | None = None) -> list[BorrowRecord]:
    """Keep records whose start date lies in the range and whose department matches.

    Bounds are inclusive; the input order is preserved.
    """
    f = report_filter or ReportFilter()
    result = []
    for r in records:
        start = to_local_date(r.start_date)
        if f.date_from and start and start < f.date_from:
            continue
        if f.date_to and start and start > f.date_to:
            continue
        if f.department and (r.borrower_dept or "") != f.department:
            continue
        result.append(r)
    return result


def format_date(value) -> str:
    d = to_local_date(value)
    return d.strftime(settings.REPORT_DATE_FORMAT) if d else ""


def format_generated_at(generated_at: datetime) -> str:
    return generated_at.strftime(settings.REPORT_DATETIME_FORMAT)


def duration_days(record: BorrowRecord, generated_at: datetime) -> int:
    if record.returned_at is not None:
        return elapsed_days(record.start_date, record.returned_at)
    return elapsed_days(record.start_date, generated_at)


def build_rows(records: Iterable[BorrowRecord], generated_at: datetime) -> list[list]:
    """One row per record in ``COLUMNS`` order; the signature cell is left blank."""
    return [
        [
            r.asset_id or "",
            r.asset_name or "",
            r.borrower_name or "",
            r.borrower_dept or "",
            r.lender_name or "",
            format_date(r.start_date),
            format_date(r.end_date) if r.end_date else "",
            format_date(r.returned_at) if r.returned_at else "",
            duration_days(r, generated_at),
            "",
        ]
        for r in records
    ]


def render_printable(
    records: list[BorrowRecord],
    org_name: str,
    logo: str = "",
    generated_at: datetime | None = None,
) -> str:
    """Standalone printable HTML; prints itself once loaded."""
    generated_at = generated_at or datetime.now().astimezone()
    rows = build_rows(records, generated_at)
    template = templates.get_template("report_print.html")
    return template.render(
        org_name=org_name,
        logo=logo,
        title=settings.REPORT_TITLE,
        generated_at=format_generated_at(generated_at),
        columns=COLUMNS,
        rows=[(row[:-1], r.borrower_sign) for row, r in zip(rows, records)],
    )


def present_printable(html: str, opener: Callable[[str], bool] | None = None) -> Path:
    """Open the document in a new viewing context (browser tab or window).

    Raises ``PresentationError`` when nothing could be opened; the temporary
    file is removed in that case.
    """
    opener = opener or webbrowser.open
    fd, name = tempfile.mkstemp(prefix="medpool-report-", suffix=".html")
    path = Path(name)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(html)
    if not opener(path.as_uri()):
        path.unlink(missing_ok=True)
        logger.warning("Printable report could not be opened")
        raise PresentationError("Could not open the report for printing, allow pop-ups and try again")
    logger.info("Opened printable report %s", path)
    return path
