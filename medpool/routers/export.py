import warnings
from datetime import date
from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, JSONResponse, Response
from medpool.deps import get_ledger
from medpool.exceptions import EmptyExportWarning
from medpool.ledger import LedgerStore
from medpool.schemas.report import ReportFilter
import medpool.services.export_service as svc
import medpool.services.report_service as report_svc

router = APIRouter(prefix="/api/export", tags=["export"])


def report_filter(
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    department: str | None = Query(None),
) -> ReportFilter:
    return ReportFilter(date_from=date_from, date_to=date_to, department=department)


@router.get("/excel")
def export_excel(f: ReportFilter = Depends(report_filter), ledger: LedgerStore = Depends(get_ledger)):
    records = report_svc.filter_records(ledger.borrow_records, f)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", EmptyExportWarning)
        export = svc.export_spreadsheet(records, ledger.org_name)
    if export is None:
        notice = str(caught[0].message) if caught else "Nothing to export"
        return JSONResponse({"notice": notice, "count": 0})

    headers = {"Content-Disposition": f"attachment; filename={export.filename}"}
    if export.notice:
        headers["X-Export-Notice"] = export.notice
    return Response(content=export.content, media_type=export.media_type, headers=headers)


@router.get("/print", response_class=HTMLResponse)
def export_print(f: ReportFilter = Depends(report_filter), ledger: LedgerStore = Depends(get_ledger)):
    records = report_svc.filter_records(ledger.borrow_records, f)
    return HTMLResponse(report_svc.render_printable(records, ledger.org_name, ledger.report_logo))


@router.get("/pdf")
def export_pdf(f: ReportFilter = Depends(report_filter), ledger: LedgerStore = Depends(get_ledger)):
    records = report_svc.filter_records(ledger.borrow_records, f)
    pdf_bytes = svc.export_report_pdf(records, ledger.org_name, ledger.report_logo)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": "attachment; filename=medical_pool_report.pdf"},
    )
