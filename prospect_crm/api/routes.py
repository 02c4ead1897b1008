from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from prospect_crm.core.auth import create_access_token
from prospect_crm.core.config import get_settings
from prospect_crm.core.database import get_db
from prospect_crm.crm.api import (
    UNAUTHORIZED_MESSAGE,
    analytics_router,
    categories_router,
    customers_router,
    error_response,
    get_current_owner,
    import_router,
    validation_error_response,
)
from prospect_crm.crm.schemas import LoginRequest, MeRead, TokenResponse
from prospect_crm.crm.service import Owner, UserService
from prospect_crm.crm.validation import ValidationFailure, validate_payload
from prospect_crm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(customers_router)
router.include_router(categories_router)
router.include_router(import_router)
router.include_router(analytics_router)

user_service = UserService()


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.post("/api/auth/login", tags=["auth"], response_model=TokenResponse)
def login(
    request: Request,
    payload: Any = Body(default=None),
    db: Session = Depends(get_db),
) -> TokenResponse | JSONResponse:
    result = validate_payload(LoginRequest, payload)
    if isinstance(result, ValidationFailure):
        return validation_error_response(request, result)
    user = user_service.authenticate(db, result.value.username, result.value.password)
    if user is None:
        return error_response(request, status_code=status.HTTP_401_UNAUTHORIZED, message="帳號或密碼錯誤")
    return TokenResponse(access_token=create_access_token(user.id, user.username))


@router.get("/api/me", tags=["auth"], response_model=MeRead)
def me(
    request: Request,
    db: Session = Depends(get_db),
    owner: Owner = Depends(get_current_owner),
) -> MeRead | JSONResponse:
    user = user_service.get(db, owner.user_id)
    if user is None:
        return error_response(request, status_code=status.HTTP_401_UNAUTHORIZED, message=UNAUTHORIZED_MESSAGE)
    return MeRead(id=user.id, username=user.username)


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
