from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from prospect_crm.core.auth import hash_password
from prospect_crm.core.config import get_settings
from prospect_crm.core.database import Base, SessionLocal, engine
from prospect_crm.crm.categories import CategoryResolver
from prospect_crm.crm.models import Contact, Customer, DevelopmentLog, User
from prospect_crm.logging import configure_logging


logger = logging.getLogger("prospect_crm.lifecycle")

DEFAULT_CATEGORIES = ["製造", "醫療", "服務", "政府", "學校", "醫院", "其他"]

SAMPLE_CUSTOMERS = [
    {
        "company": "動感幼稚園",
        "category": "學校",
        "phone": "02-1234-5678",
        "address": "春日部市雙葉町 1-1",
        "level": "L5",
        "other_sales": "A",
        "next_time": date(2023, 12, 15),
        "contacts": [("吉永老師", "主任")],
        "logs": [
            (date(2023, 11, 3), "電話", "承辦不在位子上，請下午再撥。"),
            (date(2023, 11, 23), "電話", "承辦說可先行寄發相關 Mail。"),
            (date(2023, 12, 2), "LINE", "約訪成功,約下週三見面。"),
            (date(2023, 12, 6), "實體", "初次拜訪，現場反應熱烈。"),
        ],
    },
    {
        "company": "妮妮兔子實業",
        "category": "製造",
        "phone": "03-987-6543",
        "address": "春日部市三葉町 5-2",
        "level": "L1",
        "other_sales": "S",
        "next_time": None,
        "contacts": [("妮妮媽", "總務")],
        "logs": [(date(2023, 11, 1), "電話", "電話無人接聽。")],
    },
    {
        "company": "黑磯私人保全",
        "category": "服務",
        "phone": "02-5555-6666",
        "address": "春日部市大原町 9-9",
        "level": "L3",
        "other_sales": None,
        "next_time": date(2024, 1, 5),
        "contacts": [("黑磯", "保鏢")],
        "logs": [(date(2023, 12, 10), "實體", "大小姐不感興趣，但黑磯先生態度客氣。")],
    },
]


class SeedHelper:
    """Idempotent bootstrap data: re-running only fills in what is missing."""

    def __init__(self, resolver: CategoryResolver | None = None) -> None:
        self._resolver = resolver or CategoryResolver()

    def ensure_admin(self, session: Session, username: str, password: str) -> User:
        user = session.scalar(select(User).where(User.username == username))
        if user is not None:
            return user
        user = User(username=username, password_hash=hash_password(password))
        session.add(user)
        session.commit()
        session.refresh(user)
        logger.info("seed.user_created", extra={"user_id": user.id})
        return user

    def ensure_categories(self, session: Session) -> None:
        for name in DEFAULT_CATEGORIES:
            self._resolver.resolve(session, name)

    def ensure_sample_customers(self, session: Session, owner: User) -> int:
        created = 0
        for sample in SAMPLE_CUSTOMERS:
            exists = session.scalar(
                select(Customer.id).where(
                    Customer.user_id == owner.id,
                    Customer.company == sample["company"],
                    Customer.address == sample["address"],
                )
            )
            if exists is not None:
                continue
            category = self._resolver.resolve(session, sample["category"])
            customer = Customer(
                company=sample["company"],
                address=sample["address"],
                phone=sample["phone"],
                level=sample["level"],
                other_sales=sample["other_sales"],
                next_time=sample["next_time"],
                category_id=category.id,
                user_id=owner.id,
            )
            customer.contacts = [Contact(name=name, title=title) for name, title in sample["contacts"]]
            customer.logs = [
                DevelopmentLog(log_date=log_date, method=method, notes=notes)
                for log_date, method, notes in sample["logs"]
            ]
            session.add(customer)
            session.commit()
            created += 1
        return created

    def run(self, session: Session, username: str, password: str) -> User:
        owner = self.ensure_admin(session, username, password)
        self.ensure_categories(session)
        created = self.ensure_sample_customers(session, owner)
        logger.info("seed.completed", extra={"user_id": owner.id, "imported_count": created})
        return owner


def main() -> None:
    configure_logging()
    settings = get_settings()
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        SeedHelper().run(session, settings.seed_admin_username, settings.seed_admin_password)


if __name__ == "__main__":
    main()
