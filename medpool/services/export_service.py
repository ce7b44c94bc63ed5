import base64
import binascii
import html
import io
import logging
import os
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from importlib.util import find_spec
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from reportlab.lib import colors
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont

from medpool.config import settings
from medpool.exceptions import EmptyExportWarning, ExportUnavailableError
from medpool.schemas.borrow import BorrowRecord
from medpool.services.report_service import COLUMNS, COLUMN_WIDTHS, build_rows, format_generated_at

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MEDIA_TYPE = "application/vnd.ms-excel"


# ── Font registration (Thai / extended Latin) ────────────────────────────────
_FONT_REGULAR = "Helvetica"
_FONT_BOLD = "Helvetica-Bold"
_UNICODE_CAPABLE = False

_FONT_PAIRS = [
    (
        "/usr/share/fonts/truetype/tlwg/Garuda.ttf",
        "/usr/share/fonts/truetype/tlwg/Garuda-Bold.ttf",
        "MPGaruda", "MPGarudaBold",
    ),
    (
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "MPDejaVu", "MPDejaVuBold",
    ),
    (
        "/mnt/c/Windows/Fonts/tahoma.ttf",
        "/mnt/c/Windows/Fonts/tahomabd.ttf",
        "MPTahoma", "MPTahomaBold",
    ),
]


def _init_export_fonts() -> None:
    global _FONT_REGULAR, _FONT_BOLD, _UNICODE_CAPABLE
    if _UNICODE_CAPABLE:
        return
    for reg_path, bold_path, reg_name, bold_name in _FONT_PAIRS:
        if not os.path.exists(reg_path):
            continue
        try:
            pdfmetrics.registerFont(TTFont(reg_name, reg_path))
        except Exception:
            logger.warning("Could not register font %s", reg_path)
            continue
        _FONT_REGULAR = reg_name
        _FONT_BOLD = reg_name
        if os.path.exists(bold_path):
            try:
                pdfmetrics.registerFont(TTFont(bold_name, bold_path))
                _FONT_BOLD = bold_name
            except Exception:
                logger.warning("Could not register font %s", bold_path)
        _UNICODE_CAPABLE = True
        break


_init_export_fonts()


@dataclass
class ExportFile:
    filename: str
    media_type: str
    content: bytes
    notice: str | None = None


# ── Spreadsheet writers ───────────────────────────────────────────────────────

class SpreadsheetExporter(ABC):
    extension: str
    media_type: str

    def is_available(self) -> bool:
        return True

    @abstractmethod
    def serialize(self, org_name: str, subtitle: list[str], rows: list[list]) -> bytes: ...


class XlsxExporter(SpreadsheetExporter):
    extension = "xlsx"
    media_type = XLSX_MEDIA_TYPE

    def is_available(self) -> bool:
        return settings.XLSX_EXPORT_ENABLED and find_spec("openpyxl") is not None

    def serialize(self, org_name: str, subtitle: list[str], rows: list[list]) -> bytes:
        try:
            return self._write(org_name, subtitle, rows)
        except Exception as exc:
            # openpyxl raises its own error types (e.g. IllegalCharacterError)
            raise ExportUnavailableError(f"xlsx serialisation failed: {exc}") from exc

    def _write(self, org_name: str, subtitle: list[str], rows: list[list]) -> bytes:
        from openpyxl import Workbook
        from openpyxl.styles import Font, PatternFill, Alignment
        from openpyxl.utils import get_column_letter

        wb = Workbook()
        ws = wb.active
        ws.title = "Report"

        ws.append([org_name])
        ws.append(subtitle)
        ws.append([""])
        ws.append(COLUMNS)
        for row in rows:
            ws.append(row)

        ws.merge_cells(start_row=1, start_column=1, end_row=1, end_column=len(COLUMNS))
        ws.cell(row=1, column=1).font = Font(bold=True, size=14)
        header_fill = PatternFill(start_color="F8FAFC", end_color="F8FAFC", fill_type="solid")
        for col in range(1, len(COLUMNS) + 1):
            cell = ws.cell(row=4, column=col)
            cell.font = Font(bold=True)
            cell.fill = header_fill
            cell.alignment = Alignment(horizontal="center")

        for i, w in enumerate(COLUMN_WIDTHS, 1):
            ws.column_dimensions[get_column_letter(i)].width = w
        ws.freeze_panes = "A5"

        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue()


def _esc(value) -> str:
    return html.escape(str(value))


class HtmlTableExporter(SpreadsheetExporter):
    """Legacy markup table that spreadsheet applications open as .xls."""

    extension = "xls"
    media_type = XLS_MEDIA_TYPE

    def serialize(self, org_name: str, subtitle: list[str], rows: list[list]) -> bytes:
        span = len(COLUMNS)
        parts = [
            "<!doctype html><html><head><meta charset='utf-8'></head><body><table>",
            f'<tr><th colspan="{span}" style="font-size:16px;text-align:left">{_esc(org_name)}</th></tr>',
            f'<tr><th colspan="{span}" style="text-align:left">{_esc(" • ".join(subtitle))}</th></tr>',
            "<tr>" + "".join(f"<th>{_esc(h)}</th>" for h in COLUMNS) + "</tr>",
        ]
        for row in rows:
            parts.append("<tr>" + "".join(f"<td>{_esc(v)}</td>" for v in row) + "</tr>")
        parts.append("</table></body></html>")
        return "".join(parts).encode("utf-8")


def export_spreadsheet(
    records: list[BorrowRecord],
    org_name: str,
    generated_at: datetime | None = None,
    primary: SpreadsheetExporter | None = None,
    fallback: SpreadsheetExporter | None = None,
) -> ExportFile | None:
    """Serialise filtered records; ``None`` (plus ``EmptyExportWarning``) when there are none."""
    if not records:
        warnings.warn(EmptyExportWarning("No records match the report filter, nothing to export"))
        logger.info("Spreadsheet export skipped, no matching records")
        return None

    generated_at = generated_at or datetime.now().astimezone()
    primary = primary or XlsxExporter()
    fallback = fallback or HtmlTableExporter()
    rows = build_rows(records, generated_at)
    subtitle = [settings.REPORT_TITLE, format_generated_at(generated_at)]
    stamp = int(generated_at.timestamp() * 1000)

    try:
        if not primary.is_available():
            raise ExportUnavailableError(f"{primary.extension} writer is not available")
        content = primary.serialize(org_name, subtitle, rows)
        exporter, notice = primary, None
    except ExportUnavailableError as exc:
        logger.warning("Falling back to .%s export: %s", fallback.extension, exc)
        content = fallback.serialize(org_name, subtitle, rows)
        exporter = fallback
        notice = f"Excel writer unavailable, exported a .{fallback.extension} file instead"

    logger.info("Exported %d records as .%s", len(records), exporter.extension)
    return ExportFile(
        filename=f"medical_pool_{stamp}.{exporter.extension}",
        media_type=exporter.media_type,
        content=content,
        notice=notice,
    )


# ── PDF ───────────────────────────────────────────────────────────────────────

_PDF_COL_WIDTHS_MM = [24, 44, 32, 24, 28, 22, 22, 22, 20, 35]


def _image_from_data_uri(uri: str | None) -> ImageReader | None:
    """Decode a ``data:image/...;base64,`` payload; URLs are not fetched."""
    if not uri or not uri.startswith("data:") or ";base64," not in uri:
        return None
    try:
        data = base64.b64decode(uri.split(";base64,", 1)[1], validate=True)
        reader = ImageReader(io.BytesIO(data))
        reader.getSize()
    except (binascii.Error, ValueError, OSError):
        logger.warning("Skipping undecodable image payload")
        return None
    return reader


def export_report_pdf(
    records: list[BorrowRecord],
    org_name: str,
    logo: str = "",
    generated_at: datetime | None = None,
) -> bytes:
    generated_at = generated_at or datetime.now().astimezone()
    rows = build_rows(records, generated_at)

    buf = io.BytesIO()
    pagesize = landscape(A4)
    c = canvas.Canvas(buf, pagesize=pagesize)
    c.setTitle(f"{settings.REPORT_TITLE}: {org_name}")
    pw, ph = pagesize
    margin = 12 * mm
    content_w = pw - 2 * margin
    header_h = 24 * mm
    footer_h = 10 * mm
    row_h = 9 * mm
    top_y = ph - header_h - 4 * mm
    bottom_y = footer_h + 4 * mm
    col_x = [margin]
    for w in _PDF_COL_WIDTHS_MM[:-1]:
        col_x.append(col_x[-1] + w * mm)

    logo_image = _image_from_data_uri(logo)
    page_num = [1]

    def _draw_header():
        text_x = margin
        if logo_image is not None:
            c.drawImage(logo_image, margin, ph - 18 * mm, height=12 * mm, width=12 * mm,
                        preserveAspectRatio=True, mask="auto")
            text_x += 15 * mm
        c.setFillColor(colors.HexColor("#0F172A"))
        c.setFont(_FONT_BOLD, 14)
        c.drawString(text_x, ph - 11 * mm, org_name)
        c.setFillColor(colors.HexColor("#64748B"))
        c.setFont(_FONT_REGULAR, 8)
        c.drawString(text_x, ph - 17 * mm,
                     f"{settings.REPORT_TITLE}  •  printed {format_generated_at(generated_at)}")

    def _draw_table_header(y: float) -> float:
        c.setFillColor(colors.HexColor("#F8FAFC"))
        c.rect(margin, y - row_h, content_w, row_h, fill=True, stroke=False)
        c.setFillColor(colors.black)
        c.setFont(_FONT_BOLD, 8)
        for x, label in zip(col_x, COLUMNS):
            c.drawString(x + 1.5 * mm, y - 5.5 * mm, label)
        return y - row_h

    def _draw_footer(page_n: int):
        c.setFillColor(colors.HexColor("#f0f0f0"))
        c.rect(0, 0, pw, footer_h, fill=True, stroke=False)
        c.setFillColor(colors.HexColor("#888888"))
        c.setFont(_FONT_REGULAR, 7)
        c.drawString(margin, 4 * mm, f"{org_name} - equipment lending ledger")
        c.drawRightString(pw - margin, 4 * mm, f"Page {page_n}")

    def _new_page() -> float:
        _draw_footer(page_num[0])
        c.showPage()
        page_num[0] += 1
        _draw_header()
        return _draw_table_header(top_y)

    _draw_header()
    y = _draw_table_header(top_y)

    if not rows:
        c.setFillColor(colors.HexColor("#64748B"))
        c.setFont(_FONT_REGULAR, 8)
        c.drawString(margin + 1.5 * mm, y - 5.5 * mm, "No data")

    for i, (row, record) in enumerate(zip(rows, records)):
        if y - row_h < bottom_y:
            y = _new_page()
        bg = colors.HexColor("#fafafa") if i % 2 == 0 else colors.white
        c.setFillColor(bg)
        c.rect(margin, y - row_h, content_w, row_h, fill=True, stroke=False)
        c.setFillColor(colors.black)
        c.setFont(_FONT_REGULAR, 8)
        for x, width_mm, value in zip(col_x[:-1], _PDF_COL_WIDTHS_MM, row[:-1]):
            # Rough clip: ~1.9 mm per character at 8 pt
            c.drawString(x + 1.5 * mm, y - 5.5 * mm, str(value)[: int(width_mm / 1.9)])
        signature = _image_from_data_uri(record.borrower_sign)
        if signature is not None:
            c.drawImage(signature, col_x[-1] + 1.5 * mm, y - row_h + 1 * mm,
                        width=30 * mm, height=row_h - 2 * mm, preserveAspectRatio=True, mask="auto")
        else:
            c.drawString(col_x[-1] + 1.5 * mm, y - 5.5 * mm, "-")
        y -= row_h

    _draw_footer(page_num[0])
    c.save()
    return buf.getvalue()
