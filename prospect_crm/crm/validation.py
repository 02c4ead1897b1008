from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError


ModelT = TypeVar("ModelT", bound=BaseModel)

INVALID_PAYLOAD_MESSAGE = "資料格式錯誤"

_MISSING_MESSAGES = {
    "company": "公司名稱至少需要 2 個字",
    "category": "請選擇產業類別",
    "address": "地址至少需要 5 個字",
    "level": "請選擇正確的等級",
    "contacts": "至少需要一個聯絡人",
    "logDate": "請選擇日期",
    "method": "請選擇聯繫方式",
    "notes": "紀錄內容至少需要 10 個字",
    "ids": "請選擇客戶",
}
_DEFAULT_MISSING_MESSAGE = "此欄位為必填"


@dataclass
class ValidationSuccess(Generic[ModelT]):
    value: ModelT
    ok: bool = True


@dataclass
class ValidationFailure:
    form_errors: list[str] = field(default_factory=list)
    field_errors: dict[str, list[str]] = field(default_factory=dict)
    ok: bool = False

    def to_details(self) -> dict[str, Any]:
        return {"formErrors": self.form_errors, "fieldErrors": self.field_errors}


ValidationResult = ValidationSuccess[ModelT] | ValidationFailure


def _message_for(error: Any, field_name: str) -> str:
    if error["type"] == "missing" and len(error["loc"]) == 1:
        return _MISSING_MESSAGES.get(field_name, _DEFAULT_MISSING_MESSAGE)
    return str(error["msg"])


def flatten_errors(exc: ValidationError) -> ValidationFailure:
    """Group pydantic errors by their top-level field, keeping payload-level ones apart."""
    failure = ValidationFailure()
    for error in exc.errors():
        loc = error.get("loc") or ()
        if error["type"] == "extra_forbidden":
            failure.form_errors.append(f"不允許的欄位: {loc[-1] if loc else ''}")
            continue
        if not loc:
            failure.form_errors.append(str(error["msg"]))
            continue
        field_name = str(loc[0])
        failure.field_errors.setdefault(field_name, []).append(_message_for(error, field_name))
    return failure


def validate_payload(model: type[ModelT], data: Any) -> ValidationResult[ModelT]:
    if not isinstance(data, dict):
        return ValidationFailure(form_errors=["請求內容必須是 JSON 物件"])
    try:
        return ValidationSuccess(value=model.model_validate(data))
    except ValidationError as exc:
        return flatten_errors(exc)
