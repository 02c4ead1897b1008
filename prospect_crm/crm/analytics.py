from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from prospect_crm.crm.models import CONVERTED_LEVELS, CUSTOMER_LEVELS, Customer, DevelopmentLog
from prospect_crm.crm.schemas import AnalyticsRead, ConvertedClient


def level_counts(session: Session, owner_id: int) -> dict[str, int]:
    counts = {level: 0 for level in CUSTOMER_LEVELS}
    rows = session.execute(
        select(Customer.level, func.count(Customer.id)).where(Customer.user_id == owner_id).group_by(Customer.level)
    ).all()
    for level, count in rows:
        if level in counts:
            counts[level] = count
    return counts


def log_date_counts(session: Session, owner_id: int) -> dict[str, int]:
    rows = session.execute(
        select(DevelopmentLog.log_date, func.count(DevelopmentLog.id))
        .join(Customer, Customer.id == DevelopmentLog.customer_id)
        .where(Customer.user_id == owner_id)
        .group_by(DevelopmentLog.log_date)
        .order_by(DevelopmentLog.log_date)
    ).all()
    return {log_date.isoformat(): count for log_date, count in rows}


def converted_clients(session: Session, owner_id: int) -> list[ConvertedClient]:
    customers = session.scalars(
        select(Customer)
        .where(Customer.user_id == owner_id, Customer.level.in_(CONVERTED_LEVELS))
        .order_by(Customer.updated_at.desc(), Customer.id.desc())
        .options(selectinload(Customer.category))
    ).all()
    return [
        ConvertedClient(id=customer.id, company=customer.company, category=customer.category.name, level=customer.level)
        for customer in customers
    ]


def build_analytics(session: Session, owner_id: int) -> AnalyticsRead:
    counts = level_counts(session, owner_id)
    return AnalyticsRead(
        level_counts=counts,
        total_count=session.scalar(select(func.count(Customer.id)).where(Customer.user_id == owner_id)) or 0,
        log_dates=log_date_counts(session, owner_id),
        converted_clients=converted_clients(session, owner_id),
    )
