from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import Select, or_, select
from sqlalchemy.orm import Session, selectinload

from prospect_crm.crm.models import CUSTOMER_LEVELS, Category, Contact, Customer, DevelopmentLog
from prospect_crm.crm.schemas import (
    CategorySummary,
    ContactSummary,
    CustomerListItem,
    CustomerPage,
    LogSummary,
    PendingCustomer,
    PendingGroups,
    parse_iso_date,
)


ALL_FILTER_VALUE = "全部"
DEFAULT_PAGE_SIZE = 30
MAX_PAGE_SIZE = 100
LIST_CONTACT_PREVIEW = 3
LIST_LOG_PREVIEW = 5


def _parse_int(raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def clamp_limit(raw: Any) -> int:
    value = _parse_int(raw)
    if value is None:
        return DEFAULT_PAGE_SIZE
    return min(max(value, 1), MAX_PAGE_SIZE)


@dataclass
class CustomerFilters:
    search: str | None = None
    category: str | None = None
    level: str | None = None
    log_date: date | None = None
    only_pending: bool = False
    cursor: int | None = None
    limit: int = DEFAULT_PAGE_SIZE

    @classmethod
    def from_params(
        cls,
        *,
        search: str | None = None,
        category: str | None = None,
        level: str | None = None,
        log_date: str | None = None,
        only_pending: str | None = None,
        cursor: str | None = None,
        limit: str | None = None,
    ) -> CustomerFilters:
        """Normalise raw query-string values. Unusable values become "no filter"."""
        return cls(
            search=search or None,
            category=category if category and category != ALL_FILTER_VALUE else None,
            level=level if level in CUSTOMER_LEVELS else None,
            log_date=parse_iso_date(log_date) if log_date else None,
            only_pending=only_pending == "true",
            cursor=_parse_int(cursor) if cursor else None,
            limit=clamp_limit(limit),
        )

    @property
    def sort_by_next_time(self) -> bool:
        return self.only_pending and self.cursor is None


def build_customer_query(owner_id: int, filters: CustomerFilters) -> Select[tuple[Customer]]:
    stmt: Select[tuple[Customer]] = select(Customer).where(Customer.user_id == owner_id)

    if filters.search:
        term = filters.search
        stmt = stmt.where(
            or_(
                Customer.company.icontains(term, autoescape=True),
                Customer.address.icontains(term, autoescape=True),
                Customer.contacts.any(Contact.name.icontains(term, autoescape=True)),
                Customer.logs.any(DevelopmentLog.notes.icontains(term, autoescape=True)),
            )
        )
    if filters.category:
        stmt = stmt.where(Customer.category.has(Category.name == filters.category))
    if filters.level:
        stmt = stmt.where(Customer.level == filters.level)
    if filters.only_pending:
        stmt = stmt.where(Customer.next_time.is_not(None))
    if filters.log_date is not None:
        stmt = stmt.where(Customer.logs.any(DevelopmentLog.log_date == filters.log_date))

    if filters.sort_by_next_time:
        stmt = stmt.order_by(Customer.next_time.asc(), Customer.id.desc())
    else:
        if filters.cursor is not None:
            stmt = stmt.where(Customer.id < filters.cursor)
        stmt = stmt.order_by(Customer.id.desc())
    return stmt


def to_list_item(customer: Customer) -> CustomerListItem:
    return CustomerListItem(
        id=customer.id,
        company=customer.company,
        phone=customer.phone,
        address=customer.address,
        level=customer.level,
        other_sales=customer.other_sales,
        next_time=customer.next_time,
        category=CategorySummary.model_validate(customer.category),
        contacts=[ContactSummary.model_validate(item) for item in customer.contacts[:LIST_CONTACT_PREVIEW]],
        logs=[LogSummary.model_validate(item) for item in customer.logs[:LIST_LOG_PREVIEW]],
        contact_count=len(customer.contacts),
        log_count=len(customer.logs),
    )


def list_customers(session: Session, owner_id: int, filters: CustomerFilters) -> CustomerPage:
    stmt = (
        build_customer_query(owner_id, filters)
        .options(
            selectinload(Customer.category),
            selectinload(Customer.contacts),
            selectinload(Customer.logs),
        )
        .limit(filters.limit + 1)
    )
    rows = list(session.scalars(stmt).all())

    has_more = len(rows) > filters.limit
    items = rows[: filters.limit]
    next_cursor: int | None = None
    # Ordering by next_time cannot be resumed from an id cursor.
    if has_more and not filters.sort_by_next_time:
        next_cursor = items[-1].id

    return CustomerPage(items=[to_list_item(customer) for customer in items], next_cursor=next_cursor)


def pending_group(next_time: date, today: date) -> str:
    diff_days = (next_time - today).days
    if diff_days < 0:
        return "overdue"
    if diff_days == 0:
        return "today"
    if diff_days == 1:
        return "tomorrow"
    if diff_days <= 7:
        return "this_week"
    return "later"


def list_pending(session: Session, owner_id: int, today: date | None = None) -> PendingGroups:
    reference = today or date.today()
    stmt = (
        select(Customer)
        .where(Customer.user_id == owner_id, Customer.next_time.is_not(None))
        .order_by(Customer.next_time.asc(), Customer.id.desc())
        .options(selectinload(Customer.category), selectinload(Customer.contacts))
    )
    groups = PendingGroups()
    for customer in session.scalars(stmt).all():
        item = PendingCustomer(
            id=customer.id,
            company=customer.company,
            next_time=customer.next_time,
            category=CategorySummary.model_validate(customer.category),
            contacts=[ContactSummary.model_validate(contact) for contact in customer.contacts[:1]],
        )
        getattr(groups, pending_group(item.next_time, reference)).append(item)
    return groups
