from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from prospect_crm.crm.models import CUSTOMER_LEVELS


PHONE_RE = re.compile(r"^[0-9\-\(\)\s+]+$")
_NOT_NULL_MESSAGES = {
    "company": "公司名稱至少需要 2 個字",
    "category": "請選擇產業類別",
    "address": "地址至少需要 5 個字",
}


def parse_iso_date(raw: Any) -> date | None:
    """Parse ``YYYY-MM-DD`` or a full ISO timestamp into a calendar date.

    Returns ``None`` for anything that is not a recognisable ISO value.
    """
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _fail(error_type: str, message: str) -> PydanticCustomError:
    return PydanticCustomError(error_type, message)


def _check_length(value: str, minimum: int | None, maximum: int | None, too_short: str, too_long: str) -> str:
    if minimum is not None and len(value) < minimum:
        raise _fail("string_too_short", too_short)
    if maximum is not None and len(value) > maximum:
        raise _fail("string_too_long", too_long)
    return value


def _optional_text(value: str | None, maximum: int, too_long: str) -> str | None:
    if value is None or value == "":
        return value
    return _check_length(value, None, maximum, "", too_long)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- request payloads -------------------------------------------------------


class ContactCreate(CamelModel):
    name: str
    title: str | None = None

    @field_validator("name")
    @classmethod
    def _name_length(cls, value: str) -> str:
        return _check_length(value, 2, 50, "聯絡人姓名至少需要 2 個字", "聯絡人姓名不可超過 50 個字")

    @field_validator("title")
    @classmethod
    def _title_length(cls, value: str | None) -> str | None:
        return _optional_text(value, 50, "職稱不可超過 50 個字")


class ContactUpdate(CamelModel):
    name: str | None = None
    title: str | None = None

    @field_validator("name")
    @classmethod
    def _name_length(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_length(value, 2, 50, "聯絡人姓名至少需要 2 個字", "聯絡人姓名不可超過 50 個字")

    @field_validator("title")
    @classmethod
    def _title_length(cls, value: str | None) -> str | None:
        return _optional_text(value, 50, "職稱不可超過 50 個字")


def _validate_log_date(value: Any) -> date:
    if value is None or value == "":
        raise _fail("log_date_required", "請選擇日期")
    parsed = parse_iso_date(value)
    if parsed is None:
        raise _fail("log_date_format", "日期格式不正確")
    if parsed > date.today():
        raise _fail("log_date_future", "日期不可為未來日期")
    return parsed


def _validate_method(value: str) -> str:
    if len(value) < 1:
        raise _fail("method_required", "請選擇聯繫方式")
    return value


def _validate_notes(value: str) -> str:
    return _check_length(value, 10, 500, "紀錄內容至少需要 10 個字", "紀錄內容不可超過 500 個字")


class LogCreate(CamelModel):
    log_date: date
    method: str
    notes: str

    @field_validator("log_date", mode="before")
    @classmethod
    def _log_date(cls, value: Any) -> date:
        return _validate_log_date(value)

    @field_validator("method")
    @classmethod
    def _method(cls, value: str) -> str:
        return _validate_method(value)

    @field_validator("notes")
    @classmethod
    def _notes(cls, value: str) -> str:
        return _validate_notes(value)


class LogUpdate(CamelModel):
    log_date: date | None = None
    method: str | None = None
    notes: str | None = None

    @field_validator("log_date", mode="before")
    @classmethod
    def _log_date(cls, value: Any) -> date:
        return _validate_log_date(value)

    @field_validator("method")
    @classmethod
    def _method(cls, value: str | None) -> str | None:
        return value if value is None else _validate_method(value)

    @field_validator("notes")
    @classmethod
    def _notes(cls, value: str | None) -> str | None:
        return value if value is None else _validate_notes(value)


class _CustomerFieldRules(CamelModel):
    @field_validator("company", check_fields=False)
    @classmethod
    def _company(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_length(value, 2, 100, "公司名稱至少需要 2 個字", "公司名稱不可超過 100 個字")

    @field_validator("category", check_fields=False)
    @classmethod
    def _category(cls, value: str | None) -> str | None:
        if value is not None and len(value) < 1:
            raise _fail("category_required", "請選擇產業類別")
        return value

    @field_validator("phone", check_fields=False)
    @classmethod
    def _phone(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return value
        if not PHONE_RE.match(value):
            raise _fail("phone_format", "電話格式不正確")
        return value

    @field_validator("address", check_fields=False)
    @classmethod
    def _address(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_length(value, 5, 200, "地址至少需要 5 個字", "地址不可超過 200 個字")

    @field_validator("level", mode="before", check_fields=False)
    @classmethod
    def _level(cls, value: Any) -> Any:
        if value not in CUSTOMER_LEVELS:
            raise _fail("level_enum", "請選擇正確的等級")
        return value

    @field_validator("other_sales", check_fields=False)
    @classmethod
    def _other_sales(cls, value: str | None) -> str | None:
        return _optional_text(value, 50, "其他業務資訊不可超過 50 個字")

    @field_validator("next_time", mode="before", check_fields=False)
    @classmethod
    def _next_time(cls, value: Any) -> date | None:
        if value is None or value == "":
            return None
        parsed = parse_iso_date(value)
        if parsed is None:
            raise _fail("next_time_format", "日期格式不正確")
        return parsed


class CustomerCreate(_CustomerFieldRules):
    company: str
    category: str
    phone: str | None = None
    address: str
    level: str
    other_sales: str | None = None
    next_time: date | None = None
    contacts: list[ContactCreate]
    initial_log: LogCreate | None = None

    @field_validator("contacts")
    @classmethod
    def _at_least_one_contact(cls, value: list[ContactCreate]) -> list[ContactCreate]:
        if not value:
            raise _fail("contacts_required", "至少需要一個聯絡人")
        return value


class CustomerUpdate(_CustomerFieldRules):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    company: str | None = None
    category: str | None = None
    phone: str | None = None
    address: str | None = None
    level: str | None = None
    other_sales: str | None = None
    next_time: date | None = None

    # Omitted keys keep their stored value; an explicit null would blank a NOT NULL column.
    @field_validator("company", "category", "address", mode="before")
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            raise _fail(f"{info.field_name}_required", _NOT_NULL_MESSAGES[info.field_name])
        return value


class CategoryPayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    name: str

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return _check_length(value.strip(), 1, 50, "類別名稱為必填", "類別名稱不可超過 50 個字")


class BatchDeleteRequest(CamelModel):
    ids: list[int]

    @field_validator("ids")
    @classmethod
    def _ids(cls, value: list[int]) -> list[int]:
        if not value:
            raise _fail("ids_required", "請選擇客戶")
        return value


class BatchLevelRequest(BatchDeleteRequest):
    level: str

    @field_validator("level", mode="before")
    @classmethod
    def _level(cls, value: Any) -> Any:
        if value not in CUSTOMER_LEVELS:
            raise _fail("level_enum", "請選擇正確的等級")
        return value


class LoginRequest(CamelModel):
    username: str
    password: str


# --- responses --------------------------------------------------------------


class CategorySummary(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    name: str


class CategoryRead(CategorySummary):
    created_at: datetime
    updated_at: datetime


class CategoryList(CamelModel):
    items: list[CategoryRead]


class ContactSummary(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    name: str
    title: str | None


class ContactRead(ContactSummary):
    customer_id: int
    created_at: datetime
    updated_at: datetime


class LogSummary(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    log_date: date
    method: str
    notes: str


class LogRead(LogSummary):
    customer_id: int
    created_at: datetime
    updated_at: datetime


class CustomerRead(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    company: str
    phone: str | None
    address: str
    level: str
    other_sales: str | None
    next_time: date | None
    category_id: int
    user_id: int
    category: CategoryRead
    contacts: list[ContactRead]
    logs: list[LogRead]
    created_at: datetime
    updated_at: datetime


class CustomerListItem(CamelModel):
    id: int
    company: str
    phone: str | None
    address: str
    level: str
    other_sales: str | None
    next_time: date | None
    category: CategorySummary
    contacts: list[ContactSummary]
    logs: list[LogSummary]
    contact_count: int
    log_count: int


class CustomerPage(CamelModel):
    items: list[CustomerListItem]
    next_cursor: int | None


class PendingCustomer(CamelModel):
    id: int
    company: str
    next_time: date
    category: CategorySummary
    contacts: list[ContactSummary]


class PendingGroups(CamelModel):
    overdue: list[PendingCustomer] = []
    today: list[PendingCustomer] = []
    tomorrow: list[PendingCustomer] = []
    this_week: list[PendingCustomer] = []
    later: list[PendingCustomer] = []


class ImportedCustomer(CamelModel):
    id: int
    company: str


class ImportResult(CamelModel):
    success: bool = True
    imported: int
    errors: list[str]
    data: list[ImportedCustomer]


class ConvertedClient(CamelModel):
    id: int
    company: str
    category: str
    level: str


class AnalyticsRead(CamelModel):
    level_counts: dict[str, int]
    total_count: int
    log_dates: dict[str, int]
    converted_clients: list[ConvertedClient]


class BatchFailure(CamelModel):
    id: int
    reason: str


class BatchResult(CamelModel):
    requested: int
    succeeded: int
    failed: list[BatchFailure]


class MessageResponse(CamelModel):
    message: str


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"


class MeRead(CamelModel):
    id: int
    username: str
