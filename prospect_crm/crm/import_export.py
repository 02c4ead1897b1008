from __future__ import annotations

import csv
import io
import logging
import time
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from prospect_crm.crm.categories import DEFAULT_CATEGORY_NAME, CategoryResolver, category_resolver
from prospect_crm.crm.models import CUSTOMER_LEVELS, Contact, Customer
from prospect_crm.crm.schemas import ImportedCustomer, ImportResult, parse_iso_date
from prospect_crm.crm.service import MAX_BATCH_IDS, Owner
from prospect_crm.metrics import observe_export, observe_import


logger = logging.getLogger("prospect_crm.import")
tracer = trace.get_tracer("prospect_crm.import")

COLUMN_COMPANY = "公司名稱"
COLUMN_ADDRESS = "地址"
COLUMN_CATEGORY = "產業類別"
COLUMN_PHONE = "電話"
COLUMN_LEVEL = "等級"
COLUMN_CONTACT = "聯絡人"
COLUMN_TITLE = "職稱"
COLUMN_OTHER_SALES = "其他業務"
COLUMN_NEXT_TIME = "下次聯繫時間"

EXPORT_COLUMNS = [
    "客戶ID",
    "公司名稱",
    "產業類別",
    "等級",
    "地址",
    "電話",
    "其他業務",
    "下次聯繫時間",
    "聯絡人",
    "最新聯繫日期",
    "最新聯繫方式",
    "最新紀錄",
]
EXPORT_SHEET_TITLE = "customers"
CSV_MEDIA_TYPE = "text/csv; charset=utf-8"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

NO_FILE_MESSAGE = "未上傳檔案"
EMPTY_FILE_MESSAGE = "Excel 檔案無資料"
UNSUPPORTED_FILE_MESSAGE = "不支援的檔案格式，請上傳 .xlsx 或 .csv"
UNREADABLE_FILE_MESSAGE = "無法讀取檔案內容"


# --- reading ----------------------------------------------------------------


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _is_blank(row: dict[str, Any]) -> bool:
    return all(cell_text(value) == "" for value in row.values())


def _read_xlsx(content: bytes) -> list[dict[str, Any]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=UNREADABLE_FILE_MESSAGE)

    try:
        sheet = workbook.worksheets[0]
        values = sheet.iter_rows(values_only=True)
        header = next(values, None)
        if header is None:
            return []
        keys = [cell_text(cell) for cell in header]
        rows: list[dict[str, Any]] = []
        for raw in values:
            rows.append({key: cell for key, cell in zip(keys, raw) if key})
        return rows
    finally:
        workbook.close()


def _read_csv(content: bytes) -> list[dict[str, Any]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=UNREADABLE_FILE_MESSAGE)
    reader = csv.DictReader(io.StringIO(text))
    return [{(key or "").strip(): value for key, value in row.items() if key} for row in reader]


def read_rows(filename: str, content: bytes) -> list[dict[str, Any]]:
    """Parse the first sheet of an .xlsx workbook or a .csv file into header-keyed rows.

    Fully blank rows are dropped so row numbers in error messages count data rows only.
    """
    lowered = filename.lower()
    if lowered.endswith(".xlsx"):
        rows = _read_xlsx(content)
    elif lowered.endswith(".csv"):
        rows = _read_csv(content)
    else:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=UNSUPPORTED_FILE_MESSAGE)
    return [row for row in rows if not _is_blank(row)]


def _parse_next_time(value: Any) -> date | None:
    if value is None or cell_text(value) == "":
        return None
    parsed = parse_iso_date(value)
    if parsed is None:
        raise ValueError(f"{COLUMN_NEXT_TIME}格式不正確: {cell_text(value)}")
    return parsed


# --- import -----------------------------------------------------------------


class ImportPipeline:
    def __init__(self, resolver: CategoryResolver | None = None) -> None:
        self.resolver = resolver or category_resolver

    def run(self, session: Session, owner: Owner, rows: list[dict[str, Any]]) -> ImportResult:
        if not rows:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=EMPTY_FILE_MESSAGE)

        started = time.perf_counter()
        imported: list[ImportedCustomer] = []
        errors: list[str] = []

        with tracer.start_as_current_span("crm.import") as span:
            span.set_attribute("row_count", len(rows))
            span.set_attribute("correlation_id", owner.correlation_id or "")

            for index, row in enumerate(rows, start=2):
                error = self._import_row(session, owner, index, row, imported)
                if error is not None:
                    errors.append(error)

            span.set_attribute("imported_count", len(imported))
            span.set_attribute("error_count", len(errors))

        observe_import(len(imported), len(errors), time.perf_counter() - started)
        logger.info(
            "import.completed",
            extra={
                "user_id": owner.user_id,
                "row_count": len(rows),
                "imported_count": len(imported),
                "error_count": len(errors),
            },
        )
        return ImportResult(success=True, imported=len(imported), errors=errors, data=imported)

    def _import_row(
        self,
        session: Session,
        owner: Owner,
        row_number: int,
        row: dict[str, Any],
        imported: list[ImportedCustomer],
    ) -> str | None:
        company = cell_text(row.get(COLUMN_COMPANY))
        address = cell_text(row.get(COLUMN_ADDRESS))
        if not company or not address:
            return f"第 {row_number} 行: 缺少公司名稱或地址"

        duplicate_id = session.scalar(
            select(Customer.id).where(
                Customer.user_id == owner.user_id,
                Customer.company == company,
                Customer.address == address,
            )
        )
        if duplicate_id is not None:
            return f"第 {row_number} 行: 重複資料（已存在客戶 ID: {duplicate_id}）"

        try:
            category = self.resolver.resolve(session, cell_text(row.get(COLUMN_CATEGORY)) or DEFAULT_CATEGORY_NAME)
            level = cell_text(row.get(COLUMN_LEVEL))
            customer = Customer(
                company=company,
                address=address,
                phone=cell_text(row.get(COLUMN_PHONE)) or None,
                level=level if level in CUSTOMER_LEVELS else "L1",
                other_sales=cell_text(row.get(COLUMN_OTHER_SALES)) or None,
                next_time=_parse_next_time(row.get(COLUMN_NEXT_TIME)),
                category_id=category.id,
                user_id=owner.user_id,
            )
            contact_name = cell_text(row.get(COLUMN_CONTACT))
            if contact_name:
                customer.contacts = [Contact(name=contact_name, title=cell_text(row.get(COLUMN_TITLE)) or None)]
            session.add(customer)
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.warning("import.row_failed", extra={"user_id": owner.user_id, "error": str(exc)})
            return f"第 {row_number} 行: {exc}"

        imported.append(ImportedCustomer(id=customer.id, company=customer.company))
        return None


import_pipeline = ImportPipeline()


# --- export -----------------------------------------------------------------


@dataclass
class ExportFile:
    content: bytes
    media_type: str
    filename: str


def parse_export_ids(raw: str | None) -> list[int]:
    """Comma separated ids; non-integers dropped, duplicates removed, capped."""
    ids: list[int] = []
    for item in (raw or "").split(","):
        try:
            ids.append(int(item.strip()))
        except ValueError:
            continue
    return list(dict.fromkeys(ids))[:MAX_BATCH_IDS]


def export_stamp(now: datetime | None = None) -> str:
    moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S-") + f"{moment.microsecond // 1000:03d}"


def _format_contacts(contacts: list[Contact]) -> str:
    return "、".join(f"{item.name}({item.title})" if item.title else item.name for item in contacts)


def build_export_rows(session: Session, owner: Owner, ids: list[int]) -> list[dict[str, Any]]:
    customers = session.scalars(
        select(Customer)
        .where(Customer.user_id == owner.user_id, Customer.id.in_(ids))
        .order_by(Customer.id.desc())
        .options(
            selectinload(Customer.category),
            selectinload(Customer.contacts),
            selectinload(Customer.logs),
        )
    ).all()

    rows: list[dict[str, Any]] = []
    for customer in customers:
        latest = customer.logs[0] if customer.logs else None
        rows.append(
            {
                "客戶ID": customer.id,
                "公司名稱": customer.company,
                "產業類別": customer.category.name,
                "等級": customer.level,
                "地址": customer.address,
                "電話": customer.phone or "",
                "其他業務": customer.other_sales or "",
                "下次聯繫時間": customer.next_time.isoformat() if customer.next_time else "",
                "聯絡人": _format_contacts(customer.contacts),
                "最新聯繫日期": latest.log_date.isoformat() if latest else "",
                "最新聯繫方式": latest.method if latest else "",
                "最新紀錄": latest.notes if latest else "",
            }
        )
    return rows


def csv_escape(value: Any) -> str:
    text = "" if value is None else str(value)
    if any(char in text for char in ',"\r\n'):
        return '"' + text.replace('"', '""') + '"'
    return text


def render_csv(rows: list[dict[str, Any]]) -> bytes:
    lines = [",".join(csv_escape(column) for column in EXPORT_COLUMNS)]
    for row in rows:
        lines.append(",".join(csv_escape(row.get(column)) for column in EXPORT_COLUMNS))
    return ("\ufeff" + "\n".join(lines)).encode("utf-8")


def render_xlsx(rows: list[dict[str, Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = EXPORT_SHEET_TITLE
    sheet.append(EXPORT_COLUMNS)
    for row in rows:
        sheet.append([row.get(column) for column in EXPORT_COLUMNS])
    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()


def export_customers(
    session: Session,
    owner: Owner,
    ids: list[int],
    export_format: str,
    now: datetime | None = None,
) -> ExportFile:
    with tracer.start_as_current_span("crm.export") as span:
        span.set_attribute("format", export_format)
        span.set_attribute("requested", len(ids))
        rows = build_export_rows(session, owner, ids)
        span.set_attribute("row_count", len(rows))
        if export_format == "xlsx":
            content = render_xlsx(rows)
            media_type = XLSX_MEDIA_TYPE
        else:
            content = render_csv(rows)
            media_type = CSV_MEDIA_TYPE

    observe_export(export_format, len(rows))
    logger.info(
        "export.completed",
        extra={"user_id": owner.user_id, "format": export_format, "row_count": len(rows)},
    )
    return ExportFile(
        content=content,
        media_type=media_type,
        filename=f"customers-{export_stamp(now)}.{export_format}",
    )
