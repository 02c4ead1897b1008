from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from prospect_crm.core.auth import verify_password
from prospect_crm.crm.categories import CategoryResolver, category_resolver
from prospect_crm.crm.models import Category, Contact, Customer, DevelopmentLog, User
from prospect_crm.crm.schemas import (
    BatchFailure,
    BatchResult,
    CategoryRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomerCreate,
    CustomerRead,
    CustomerUpdate,
    LogCreate,
    LogRead,
    LogUpdate,
)
from prospect_crm.metrics import observe_batch


logger = logging.getLogger("prospect_crm.crm")

MAX_BATCH_IDS = 500

CUSTOMER_NOT_FOUND = "客戶不存在"
CONTACT_NOT_FOUND = "聯絡人不存在"
LOG_NOT_FOUND = "開發紀錄不存在"
CATEGORY_NOT_FOUND = "類別不存在"
CATEGORY_EXISTS = "類別已存在"
CATEGORY_IN_USE = "此類別已被客戶使用，無法刪除"
LAST_CONTACT = "無法刪除最後一個聯絡人，每個客戶至少需要一個聯絡人"


@dataclass
class Owner:
    """The authenticated principal every customer read and write is scoped to."""

    user_id: int
    username: str
    correlation_id: str | None = None


def normalize_ids(ids: list[int]) -> list[int]:
    return list(dict.fromkeys(ids))[:MAX_BATCH_IDS]


def _blank_to_none(value: str | None) -> str | None:
    return value or None


def get_owned_customer(session: Session, owner: Owner, customer_id: int) -> Customer:
    customer = session.scalar(
        select(Customer).where(Customer.id == customer_id, Customer.user_id == owner.user_id)
    )
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CUSTOMER_NOT_FOUND)
    return customer


class UserService:
    def authenticate(self, session: Session, username: str, password: str) -> User | None:
        user = session.scalar(select(User).where(User.username == username))
        if user is None or not verify_password(password, user.password_hash):
            return None
        return user

    def get(self, session: Session, user_id: int) -> User | None:
        return session.get(User, user_id)


class CustomerService:
    def __init__(self, resolver: CategoryResolver | None = None) -> None:
        self.resolver = resolver or category_resolver

    def create_customer(self, session: Session, owner: Owner, dto: CustomerCreate) -> CustomerRead:
        category = self.resolver.resolve(session, dto.category)

        customer = Customer(
            company=dto.company,
            address=dto.address,
            phone=_blank_to_none(dto.phone),
            level=dto.level,
            other_sales=_blank_to_none(dto.other_sales),
            next_time=dto.next_time,
            category_id=category.id,
            user_id=owner.user_id,
        )
        customer.contacts = [Contact(name=item.name, title=_blank_to_none(item.title)) for item in dto.contacts]
        if dto.initial_log is not None:
            customer.logs = [
                DevelopmentLog(
                    log_date=dto.initial_log.log_date,
                    method=dto.initial_log.method,
                    notes=dto.initial_log.notes,
                )
            ]
        session.add(customer)
        session.commit()

        logger.info("customer.created", extra={"customer_id": customer.id, "user_id": owner.user_id})
        return self._to_read_model(session, owner, customer.id)

    def get_customer(self, session: Session, owner: Owner, customer_id: int) -> CustomerRead:
        return self._to_read_model(session, owner, customer_id)

    def update_customer(self, session: Session, owner: Owner, customer_id: int, dto: CustomerUpdate) -> CustomerRead:
        customer = get_owned_customer(session, owner, customer_id)
        changes = dto.model_dump(exclude_unset=True)

        if changes.get("category"):
            customer.category_id = self.resolver.resolve(session, changes["category"]).id
        if "company" in changes:
            customer.company = changes["company"]
        if "phone" in changes:
            customer.phone = _blank_to_none(changes["phone"])
        if "address" in changes:
            customer.address = changes["address"]
        if "level" in changes:
            customer.level = changes["level"]
        if "other_sales" in changes:
            customer.other_sales = _blank_to_none(changes["other_sales"])
        if "next_time" in changes:
            customer.next_time = changes["next_time"]

        session.commit()
        logger.info("customer.updated", extra={"customer_id": customer_id, "user_id": owner.user_id})
        return self._to_read_model(session, owner, customer_id)

    def delete_customer(self, session: Session, owner: Owner, customer_id: int) -> None:
        customer = get_owned_customer(session, owner, customer_id)
        session.delete(customer)
        session.commit()
        logger.info("customer.deleted", extra={"customer_id": customer_id, "user_id": owner.user_id})

    def _to_read_model(self, session: Session, owner: Owner, customer_id: int) -> CustomerRead:
        customer = session.scalar(
            select(Customer)
            .where(Customer.id == customer_id, Customer.user_id == owner.user_id)
            .options(
                selectinload(Customer.category),
                selectinload(Customer.contacts),
                selectinload(Customer.logs),
            )
            .execution_options(populate_existing=True)
        )
        if customer is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CUSTOMER_NOT_FOUND)
        return CustomerRead.model_validate(customer)


class ContactService:
    def create_contact(self, session: Session, owner: Owner, customer_id: int, dto: ContactCreate) -> ContactRead:
        get_owned_customer(session, owner, customer_id)
        contact = Contact(customer_id=customer_id, name=dto.name, title=_blank_to_none(dto.title))
        session.add(contact)
        session.commit()
        session.refresh(contact)
        return ContactRead.model_validate(contact)

    def update_contact(
        self,
        session: Session,
        owner: Owner,
        customer_id: int,
        contact_id: int,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._get_contact(session, owner, customer_id, contact_id)
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            contact.name = changes["name"]
        if "title" in changes:
            contact.title = _blank_to_none(changes["title"])
        session.commit()
        session.refresh(contact)
        return ContactRead.model_validate(contact)

    def delete_contact(self, session: Session, owner: Owner, customer_id: int, contact_id: int) -> None:
        contact = self._get_contact(session, owner, customer_id, contact_id)
        remaining = session.scalar(select(func.count(Contact.id)).where(Contact.customer_id == customer_id)) or 0
        if remaining <= 1:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=LAST_CONTACT)
        session.delete(contact)
        session.commit()

    def _get_contact(self, session: Session, owner: Owner, customer_id: int, contact_id: int) -> Contact:
        get_owned_customer(session, owner, customer_id)
        contact = session.scalar(
            select(Contact).where(Contact.id == contact_id, Contact.customer_id == customer_id)
        )
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CONTACT_NOT_FOUND)
        return contact


class LogService:
    def create_log(self, session: Session, owner: Owner, customer_id: int, dto: LogCreate) -> LogRead:
        get_owned_customer(session, owner, customer_id)
        log = DevelopmentLog(customer_id=customer_id, log_date=dto.log_date, method=dto.method, notes=dto.notes)
        session.add(log)
        session.commit()
        session.refresh(log)
        return LogRead.model_validate(log)

    def update_log(
        self,
        session: Session,
        owner: Owner,
        customer_id: int,
        log_id: int,
        dto: LogUpdate,
    ) -> LogRead:
        log = self._get_log(session, owner, customer_id, log_id)
        for field_name, value in dto.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(log, field_name, value)
        session.commit()
        session.refresh(log)
        return LogRead.model_validate(log)

    def delete_log(self, session: Session, owner: Owner, customer_id: int, log_id: int) -> None:
        log = self._get_log(session, owner, customer_id, log_id)
        session.delete(log)
        session.commit()

    def _get_log(self, session: Session, owner: Owner, customer_id: int, log_id: int) -> DevelopmentLog:
        get_owned_customer(session, owner, customer_id)
        log = session.scalar(
            select(DevelopmentLog).where(DevelopmentLog.id == log_id, DevelopmentLog.customer_id == customer_id)
        )
        if log is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=LOG_NOT_FOUND)
        return log


class CategoryService:
    def list_categories(self, session: Session) -> list[CategoryRead]:
        categories = session.scalars(select(Category).order_by(Category.name.asc())).all()
        return [CategoryRead.model_validate(category) for category in categories]

    def create_category(self, session: Session, name: str) -> CategoryRead:
        category = Category(name=name)
        session.add(category)
        self._commit_unique(session)
        session.refresh(category)
        logger.info("category.created", extra={"category_id": category.id})
        return CategoryRead.model_validate(category)

    def rename_category(self, session: Session, category_id: int, name: str) -> CategoryRead:
        category = self._get(session, category_id)
        category.name = name
        self._commit_unique(session)
        session.refresh(category)
        return CategoryRead.model_validate(category)

    def delete_category(self, session: Session, category_id: int) -> None:
        category = self._get(session, category_id)
        usage = session.scalar(select(func.count(Customer.id)).where(Customer.category_id == category_id)) or 0
        if usage > 0:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=CATEGORY_IN_USE)
        session.delete(category)
        session.commit()
        logger.info("category.deleted", extra={"category_id": category_id})

    def _get(self, session: Session, category_id: int) -> Category:
        category = session.get(Category, category_id)
        if category is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=CATEGORY_NOT_FOUND)
        return category

    def _commit_unique(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=CATEGORY_EXISTS)


class BatchService:
    """Applies one action per customer id, each committed on its own.

    A failing id is reported back and never undoes ids already processed.
    Ids run one after another because every item shares the request's single
    synchronous Session, which must not be used from concurrent tasks.
    """

    def update_level(self, session: Session, owner: Owner, ids: list[int], level: str) -> BatchResult:
        def apply(customer: Customer) -> None:
            customer.level = level

        return self._run(session, owner, ids, "level", apply)

    def delete(self, session: Session, owner: Owner, ids: list[int]) -> BatchResult:
        return self._run(session, owner, ids, "delete", session.delete)

    def _run(self, session: Session, owner: Owner, ids: list[int], action: str, apply: Any) -> BatchResult:
        unique_ids = normalize_ids(ids)
        failed: list[BatchFailure] = []
        succeeded = 0
        for customer_id in unique_ids:
            customer = session.scalar(
                select(Customer).where(Customer.id == customer_id, Customer.user_id == owner.user_id)
            )
            if customer is None:
                failed.append(BatchFailure(id=customer_id, reason=CUSTOMER_NOT_FOUND))
                continue
            try:
                apply(customer)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning(
                    "batch.item_failed",
                    extra={"action": action, "customer_id": customer_id, "error": str(exc)},
                )
                failed.append(BatchFailure(id=customer_id, reason="儲存失敗"))
                continue
            succeeded += 1

        observe_batch(action, succeeded, len(failed))
        logger.info(
            "batch.completed",
            extra={
                "action": action,
                "user_id": owner.user_id,
                "requested": len(unique_ids),
                "succeeded": succeeded,
                "error_count": len(failed),
            },
        )
        return BatchResult(requested=len(unique_ids), succeeded=succeeded, failed=failed)
