from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from prospect_crm.context import get_correlation_id
from prospect_crm.core.auth import AuthUser, get_current_user as get_auth_user
from prospect_crm.core.database import get_db
from prospect_crm.crm.analytics import build_analytics
from prospect_crm.crm.import_export import NO_FILE_MESSAGE, export_customers, import_pipeline, parse_export_ids, read_rows
from prospect_crm.crm.query import CustomerFilters, list_customers, list_pending
from prospect_crm.crm.schemas import (
    AnalyticsRead,
    BatchDeleteRequest,
    BatchLevelRequest,
    BatchResult,
    CategoryList,
    CategoryPayload,
    CategoryRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomerCreate,
    CustomerPage,
    CustomerRead,
    CustomerUpdate,
    ImportResult,
    LogCreate,
    LogRead,
    LogUpdate,
    MessageResponse,
    PendingGroups,
)
from prospect_crm.crm.service import (
    BatchService,
    CategoryService,
    ContactService,
    CustomerService,
    LogService,
    Owner,
)
from prospect_crm.crm.validation import INVALID_PAYLOAD_MESSAGE, ValidationFailure, validate_payload


customers_router = APIRouter(prefix="/api/customers", tags=["crm.customers"])
categories_router = APIRouter(prefix="/api/categories", tags=["crm.categories"])
import_router = APIRouter(prefix="/api", tags=["crm.import"])
analytics_router = APIRouter(prefix="/api", tags=["crm.analytics"])

customer_service = CustomerService()
contact_service = ContactService()
log_service = LogService()
category_service = CategoryService()
batch_service = BatchService()

UNAUTHORIZED_MESSAGE = "未授權"
DELETED_MESSAGE = "刪除成功"
INVALID_PARAMS_MESSAGE = "參數錯誤"
EXPORT_FORMATS = ("csv", "xlsx")


@dataclass
class ErrorEnvelope:
    error: str
    details: Any
    correlation_id: str | None

    def to_content(self) -> dict[str, Any]:
        content: dict[str, Any] = {"error": self.error}
        if self.details is not None:
            content["details"] = self.details
        content["correlationId"] = self.correlation_id
        return content


def error_response(
    request: Request,
    *,
    status_code: int,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(error=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.to_content())


def validation_error_response(request: Request, failure: ValidationFailure, message: str = INVALID_PAYLOAD_MESSAGE) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        message=message,
        details=failure.to_details(),
    )


def http_error_response(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, message=str(exc.detail))


def get_current_owner(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> Owner:
    try:
        user_id = int(auth_user.sub)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=UNAUTHORIZED_MESSAGE)
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return Owner(user_id=user_id, username=auth_user.username, correlation_id=correlation_id)


# --- customers --------------------------------------------------------------


@customers_router.get("", response_model=CustomerPage)
def get_customers(
    search: str | None = Query(default=None),
    category: str | None = Query(default=None),
    level: str | None = Query(default=None),
    log_date: str | None = Query(default=None, alias="date"),
    only_pending: str | None = Query(default=None, alias="onlyPending"),
    cursor: str | None = Query(default=None),
    limit: str | None = Query(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> CustomerPage:
    filters = CustomerFilters.from_params(
        search=search,
        category=category,
        level=level,
        log_date=log_date,
        only_pending=only_pending,
        cursor=cursor,
        limit=limit,
    )
    return list_customers(db, owner.user_id, filters)


@customers_router.post("", response_model=CustomerRead, status_code=status.HTTP_201_CREATED)
def create_customer(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> CustomerRead | JSONResponse:
    result = validate_payload(CustomerCreate, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return customer_service.create_customer(db, owner, result.value)
    except HTTPException as exc:
        return http_error_response(request, exc)


@customers_router.get("/export", response_model=None)
def export_selected_customers(
    request: Request,
    ids: str | None = Query(default=None),
    export_format: str = Query(default="csv", alias="format"),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> Response:
    parsed_ids = parse_export_ids(ids)
    failure = ValidationFailure()
    if not parsed_ids:
        failure.field_errors["ids"] = ["ids 不可為空"]
    if export_format not in EXPORT_FORMATS:
        failure.field_errors["format"] = ["格式僅支援 csv 或 xlsx"]
    if failure.field_errors:
        return validation_error_response(request, failure, INVALID_PARAMS_MESSAGE)

    exported = export_customers(db, owner, parsed_ids, export_format)
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{exported.filename}"',
            "Cache-Control": "no-store",
        },
    )


@customers_router.get("/pending", response_model=PendingGroups)
def get_pending_customers(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> PendingGroups:
    return list_pending(db, owner.user_id)


@customers_router.post("/batch/level", response_model=BatchResult)
def batch_update_level(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> BatchResult | JSONResponse:
    result = validate_payload(BatchLevelRequest, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    return batch_service.update_level(db, owner, result.value.ids, result.value.level)


@customers_router.post("/batch/delete", response_model=BatchResult)
def batch_delete(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> BatchResult | JSONResponse:
    result = validate_payload(BatchDeleteRequest, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    return batch_service.delete(db, owner, result.value.ids)


@customers_router.get("/{customer_id}", response_model=CustomerRead)
def get_customer(
    request: Request,
    customer_id: int,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> CustomerRead | JSONResponse:
    try:
        return customer_service.get_customer(db, owner, customer_id)
    except HTTPException as exc:
        return http_error_response(request, exc)


@customers_router.patch("/{customer_id}", response_model=CustomerRead)
def patch_customer(
    request: Request,
    customer_id: int,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> CustomerRead | JSONResponse:
    result = validate_payload(CustomerUpdate, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return customer_service.update_customer(db, owner, customer_id, result.value)
    except HTTPException as exc:
        return http_error_response(request, exc)


@customers_router.delete("/{customer_id}", response_model=MessageResponse)
def delete_customer(
    request: Request,
    customer_id: int,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> MessageResponse | JSONResponse:
    try:
        customer_service.delete_customer(db, owner, customer_id)
        return MessageResponse(message=DELETED_MESSAGE)
    except HTTPException as exc:
        return http_error_response(request, exc)


# --- contacts ---------------------------------------------------------------


@customers_router.post("/{customer_id}/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    customer_id: int,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> ContactRead | JSONResponse:
    result = validate_payload(ContactCreate, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return contact_service.create_contact(db, owner, customer_id, result.value)
    except HTTPException as exc:
        return http_error_response(request, exc)


@customers_router.patch("/{customer_id}/contacts/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    customer_id: int,
    contact_id: int,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> ContactRead | JSONResponse:
    result = validate_payload(ContactUpdate, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return contact_service.update_contact(db, owner, customer_id, contact_id, result.value)
    except HTTPException as exc:
        return http_error_response(request, exc)


@customers_router.delete("/{customer_id}/contacts/{contact_id}", response_model=MessageResponse)
def delete_contact(
    request: Request,
    customer_id: int,
    contact_id: int,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> MessageResponse | JSONResponse:
    try:
        contact_service.delete_contact(db, owner, customer_id, contact_id)
        return MessageResponse(message=DELETED_MESSAGE)
    except HTTPException as exc:
        return http_error_response(request, exc)


# --- development logs -------------------------------------------------------


@customers_router.post("/{customer_id}/logs", response_model=LogRead, status_code=status.HTTP_201_CREATED)
def create_log(
    request: Request,
    customer_id: int,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> LogRead | JSONResponse:
    result = validate_payload(LogCreate, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return log_service.create_log(db, owner, customer_id, result.value)
    except HTTPException as exc:
        return http_error_response(request, exc)


@customers_router.patch("/{customer_id}/logs/{log_id}", response_model=LogRead)
def patch_log(
    request: Request,
    customer_id: int,
    log_id: int,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> LogRead | JSONResponse:
    result = validate_payload(LogUpdate, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return log_service.update_log(db, owner, customer_id, log_id, result.value)
    except HTTPException as exc:
        return http_error_response(request, exc)


@customers_router.delete("/{customer_id}/logs/{log_id}", response_model=MessageResponse)
def delete_log(
    request: Request,
    customer_id: int,
    log_id: int,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> MessageResponse | JSONResponse:
    try:
        log_service.delete_log(db, owner, customer_id, log_id)
        return MessageResponse(message=DELETED_MESSAGE)
    except HTTPException as exc:
        return http_error_response(request, exc)


# --- categories -------------------------------------------------------------


@categories_router.get("", response_model=CategoryList)
def get_categories(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> CategoryList:
    return CategoryList(items=category_service.list_categories(db))


@categories_router.post("", response_model=CategoryRead, status_code=status.HTTP_201_CREATED)
def create_category(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> CategoryRead | JSONResponse:
    result = validate_payload(CategoryPayload, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return category_service.create_category(db, result.value.name)
    except HTTPException as exc:
        return http_error_response(request, exc)


@categories_router.patch("/{category_id}", response_model=CategoryRead)
def rename_category(
    request: Request,
    category_id: int,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> CategoryRead | JSONResponse:
    result = validate_payload(CategoryPayload, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    try:
        return category_service.rename_category(db, category_id, result.value.name)
    except HTTPException as exc:
        return http_error_response(request, exc)


@categories_router.delete("/{category_id}", response_model=MessageResponse)
def delete_category(
    request: Request,
    category_id: int,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> MessageResponse | JSONResponse:
    try:
        category_service.delete_category(db, category_id)
        return MessageResponse(message=DELETED_MESSAGE)
    except HTTPException as exc:
        return http_error_response(request, exc)


# --- import & analytics -----------------------------------------------------


@import_router.post("/import", response_model=ImportResult)
def import_customers(
    request: Request,
    file: UploadFile | None = File(default=None),
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> ImportResult | JSONResponse:
    if file is None:
        return error_response(request, status_code=status.HTTP_400_BAD_REQUEST, message=NO_FILE_MESSAGE)
    try:
        rows = read_rows(file.filename or "", file.file.read())
        return import_pipeline.run(db, owner, rows)
    except HTTPException as exc:
        return http_error_response(request, exc)


@analytics_router.get("/analytics", response_model=AnalyticsRead)
def get_analytics(
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> AnalyticsRead:
    return build_analytics(db, owner.user_id)
