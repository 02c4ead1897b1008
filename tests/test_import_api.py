from __future__ import annotations

import csv
import io
from collections.abc import Generator
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from prospect_crm.core.database import Base, get_db
from prospect_crm.crm.api import get_current_owner
from prospect_crm.crm.import_export import read_rows
from prospect_crm.crm.models import Customer, User
from prospect_crm.crm.service import Owner
from prospect_crm.main import app


HEADERS = ["公司名稱", "地址", "產業類別", "電話", "等級", "聯絡人", "職稱", "其他業務", "下次聯繫時間"]


def _csv_bytes(headers: list[str], rows: list[list[str]]) -> bytes:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(headers)
    writer.writerows(rows)
    return output.getvalue().encode("utf-8")


def _xlsx_bytes(headers: list[str], rows: list[list[object]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(headers)
    for row in rows:
        sheet.append(row)
    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def owner(db_session: Session) -> Owner:
    user = User(username="alice", password_hash="x")
    db_session.add(user)
    db_session.commit()
    return Owner(user_id=user.id, username=user.username)


@pytest.fixture()
def client(db_session: Session, owner: Owner) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_owner] = lambda: owner
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _import(client: TestClient, filename: str, content: bytes):
    return client.post("/api/import", files={"file": (filename, content, "application/octet-stream")})


def test_csv_import_reports_row_errors_and_keeps_good_rows(client: TestClient, db_session: Session) -> None:
    existing = client.post(
        "/api/customers",
        json={
            "company": "妮妮兔子實業",
            "category": "製造",
            "address": "春日部市三葉町 5-2",
            "level": "L1",
            "contacts": [{"name": "櫻田妮妮"}],
        },
    )
    assert existing.status_code == 201
    existing_id = existing.json()["id"]

    content = _csv_bytes(
        HEADERS,
        [
            ["沒有地址的公司", "", "製造", "", "L1", "", "", "", ""],
            ["妮妮兔子實業", "春日部市三葉町 5-2", "製造", "", "L2", "", "", "", ""],
            ["動感幼稚園", "春日部市雙葉町 1-1", "學校", "02-1234-5678", "L5", "吉永老師", "主任", "A", "2024-01-05"],
        ],
    )

    response = _import(client, "customers.csv", content)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["imported"] == 1
    assert [item["company"] for item in body["data"]] == ["動感幼稚園"]
    assert body["errors"] == [
        "第 2 行: 缺少公司名稱或地址",
        f"第 3 行: 重複資料（已存在客戶 ID: {existing_id}）",
    ]

    customer = db_session.scalar(
        select(Customer)
        .where(Customer.id == body["data"][0]["id"])
        .options(selectinload(Customer.contacts), selectinload(Customer.category))
    )
    assert customer is not None
    assert customer.level == "L5"
    assert customer.category.name == "學校"
    assert customer.next_time is not None and customer.next_time.isoformat() == "2024-01-05"
    assert [(contact.name, contact.title) for contact in customer.contacts] == [("吉永老師", "主任")]

    untouched = db_session.scalar(select(Customer).where(Customer.id == existing_id))
    assert untouched is not None
    assert untouched.level == "L1"


def test_csv_import_skips_repeated_rows_within_one_file(client: TestClient) -> None:
    content = _csv_bytes(
        HEADERS,
        [
            ["動感幼稚園", "春日部市雙葉町 1-1", "學校", "", "L2", "", "", "", ""],
            ["動感幼稚園", "春日部市雙葉町 1-1", "學校", "", "L3", "", "", "", ""],
        ],
    )

    body = _import(client, "customers.csv", content).json()
    assert body["imported"] == 1
    assert body["errors"] == [f"第 3 行: 重複資料（已存在客戶 ID: {body['data'][0]['id']}）"]


def test_import_defaults_category_and_level(client: TestClient, db_session: Session) -> None:
    content = _csv_bytes(
        HEADERS,
        [["妮妮兔子實業", "春日部市三葉町 5-2", "", "", "L9", "", "", "", ""]],
    )

    body = _import(client, "customers.csv", content).json()
    assert body["imported"] == 1
    assert body["errors"] == []

    customer = db_session.scalar(
        select(Customer).where(Customer.id == body["data"][0]["id"]).options(selectinload(Customer.contacts))
    )
    assert customer is not None
    assert customer.level == "L1"
    assert customer.category.name == "其他"
    assert customer.contacts == []


def test_import_rejects_unparseable_next_time(client: TestClient) -> None:
    content = _csv_bytes(
        HEADERS,
        [["黑磯私人保全", "春日部市大原町 9-9", "服務", "", "L3", "黑磯", "", "", "下週"]],
    )

    body = _import(client, "customers.csv", content).json()
    assert body["imported"] == 0
    assert body["errors"] == ["第 2 行: 下次聯繫時間格式不正確: 下週"]


def test_xlsx_import_reads_first_sheet(client: TestClient, db_session: Session) -> None:
    content = _xlsx_bytes(
        HEADERS,
        [
            ["動感幼稚園", "春日部市雙葉町 1-1", "學校", 21234567, "L2", "吉永老師", None, None, datetime(2024, 2, 1)],
            [None, None, None, None, None, None, None, None, None],
            ["風間補習班", None, "學校", None, "L1", None, None, None, None],
        ],
    )

    response = _import(client, "customers.xlsx", content)
    assert response.status_code == 200
    body = response.json()
    assert body["imported"] == 1
    # Blank rows are skipped before numbering.
    assert body["errors"] == ["第 3 行: 缺少公司名稱或地址"]

    customer = db_session.get(Customer, body["data"][0]["id"])
    assert customer is not None
    assert customer.phone == "21234567"
    assert customer.next_time is not None and customer.next_time.isoformat() == "2024-02-01"


def test_import_without_file_or_rows_is_rejected(client: TestClient) -> None:
    missing = client.post("/api/import")
    assert missing.status_code == 400
    assert missing.json()["error"] == "未上傳檔案"

    empty = _import(client, "customers.csv", _csv_bytes(HEADERS, []))
    assert empty.status_code == 400
    assert empty.json()["error"] == "Excel 檔案無資料"


def test_import_rejects_unknown_or_broken_files(client: TestClient) -> None:
    unsupported = _import(client, "customers.txt", b"hello")
    assert unsupported.status_code == 400
    assert unsupported.json()["error"] == "不支援的檔案格式，請上傳 .xlsx 或 .csv"

    broken = _import(client, "customers.xlsx", b"not a workbook")
    assert broken.status_code == 400
    assert broken.json()["error"] == "無法讀取檔案內容"


def test_read_rows_strips_bom_and_blank_rows() -> None:
    content = "\ufeff公司名稱,地址\n動感幼稚園,春日部市雙葉町 1-1\n,\n".encode("utf-8")

    rows = read_rows("CUSTOMERS.CSV", content)

    assert rows == [{"公司名稱": "動感幼稚園", "地址": "春日部市雙葉町 1-1"}]
