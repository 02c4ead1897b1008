from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from prospect_crm.core.database import Base, get_db
from prospect_crm.crm.api import get_current_owner
from prospect_crm.crm.models import User
from prospect_crm.crm.service import Owner
from prospect_crm.main import app


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
def users(db_session: Session) -> dict[str, User]:
    alice = User(username="alice", password_hash="x")
    bob = User(username="bob", password_hash="x")
    db_session.add_all([alice, bob])
    db_session.commit()
    return {"alice": alice, "bob": bob}


@pytest.fixture()
def actor_state(users: dict[str, User]) -> dict[str, Owner]:
    return {"owner": Owner(user_id=users["alice"].id, username="alice")}


@pytest.fixture()
def client(db_session: Session, actor_state: dict[str, Owner]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_owner(request: Request) -> Owner:
        return actor_state["owner"]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_owner] = override_get_current_owner
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def customer(client: TestClient) -> dict:
    response = client.post(
        "/api/customers",
        json={
            "company": "動感幼稚園",
            "category": "學校",
            "address": "春日部市雙葉町 1-1",
            "level": "L1",
            "contacts": [{"name": "吉永老師", "title": "主任"}],
        },
    )
    assert response.status_code == 201
    return response.json()


def test_add_update_and_delete_contact(client: TestClient, customer: dict) -> None:
    created = client.post(
        f"/api/customers/{customer['id']}/contacts",
        json={"name": "松坂老師", "title": ""},
    )
    assert created.status_code == 201
    contact = created.json()
    assert contact["customerId"] == customer["id"]
    assert contact["title"] is None

    updated = client.patch(
        f"/api/customers/{customer['id']}/contacts/{contact['id']}",
        json={"title": "老師"},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "松坂老師"
    assert updated.json()["title"] == "老師"

    deleted = client.delete(f"/api/customers/{customer['id']}/contacts/{contact['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "刪除成功"}

    remaining = client.get(f"/api/customers/{customer['id']}").json()["contacts"]
    assert [item["name"] for item in remaining] == ["吉永老師"]


def test_last_contact_cannot_be_deleted(client: TestClient, customer: dict) -> None:
    only_contact = customer["contacts"][0]

    response = client.delete(f"/api/customers/{customer['id']}/contacts/{only_contact['id']}")
    assert response.status_code == 400
    assert response.json()["error"] == "無法刪除最後一個聯絡人，每個客戶至少需要一個聯絡人"
    assert len(client.get(f"/api/customers/{customer['id']}").json()["contacts"]) == 1


def test_contact_name_length_is_validated(client: TestClient, customer: dict) -> None:
    response = client.post(f"/api/customers/{customer['id']}/contacts", json={"name": "王"})
    assert response.status_code == 400
    assert response.json()["details"]["fieldErrors"]["name"] == ["聯絡人姓名至少需要 2 個字"]


def test_contact_routes_check_parent_ownership(
    client: TestClient,
    customer: dict,
    users: dict[str, User],
    actor_state: dict[str, Owner],
) -> None:
    contact_id = customer["contacts"][0]["id"]
    actor_state["owner"] = Owner(user_id=users["bob"].id, username="bob")

    created = client.post(f"/api/customers/{customer['id']}/contacts", json={"name": "入侵者"})
    assert created.status_code == 404
    assert created.json()["error"] == "客戶不存在"

    updated = client.patch(f"/api/customers/{customer['id']}/contacts/{contact_id}", json={"name": "入侵者"})
    assert updated.status_code == 404


def test_contact_must_belong_to_the_customer(client: TestClient, customer: dict) -> None:
    other = client.post(
        "/api/customers",
        json={
            "company": "妮妮兔子實業",
            "category": "製造",
            "address": "春日部市三葉町 5-2",
            "level": "L1",
            "contacts": [{"name": "妮妮媽"}],
        },
    ).json()

    response = client.patch(
        f"/api/customers/{customer['id']}/contacts/{other['contacts'][0]['id']}",
        json={"name": "改名字"},
    )
    assert response.status_code == 404
    assert response.json()["error"] == "聯絡人不存在"


def test_add_update_and_delete_log(client: TestClient, customer: dict) -> None:
    created = client.post(
        f"/api/customers/{customer['id']}/logs",
        json={"logDate": "2023-11-03", "method": "電話", "notes": "承辦不在位子上，請下午再撥。"},
    )
    assert created.status_code == 201
    log = created.json()
    assert log["logDate"] == "2023-11-03"
    assert log["customerId"] == customer["id"]

    updated = client.patch(
        f"/api/customers/{customer['id']}/logs/{log['id']}",
        json={"method": "LINE"},
    )
    assert updated.status_code == 200
    assert updated.json()["method"] == "LINE"
    assert updated.json()["notes"] == "承辦不在位子上，請下午再撥。"

    deleted = client.delete(f"/api/customers/{customer['id']}/logs/{log['id']}")
    assert deleted.status_code == 200
    assert client.get(f"/api/customers/{customer['id']}").json()["logs"] == []


def test_log_date_accepts_full_timestamp(client: TestClient, customer: dict) -> None:
    response = client.post(
        f"/api/customers/{customer['id']}/logs",
        json={"logDate": "2023-12-02T08:30:00.000Z", "method": "LINE", "notes": "約訪成功，約下週三見面。"},
    )
    assert response.status_code == 201
    assert response.json()["logDate"] == "2023-12-02"


@pytest.mark.parametrize(
    ("payload", "field", "message"),
    [
        ({"method": "電話", "notes": "缺少日期的紀錄內容。"}, "logDate", "請選擇日期"),
        ({"logDate": "12/02/2023", "method": "電話", "notes": "日期格式錯誤的紀錄。"}, "logDate", "日期格式不正確"),
        ({"logDate": "2023-12-02", "method": "", "notes": "沒有聯繫方式的紀錄。"}, "method", "請選擇聯繫方式"),
        ({"logDate": "2023-12-02", "method": "電話", "notes": "太短"}, "notes", "紀錄內容至少需要 10 個字"),
    ],
)
def test_log_payload_validation(client: TestClient, customer: dict, payload: dict, field: str, message: str) -> None:
    response = client.post(f"/api/customers/{customer['id']}/logs", json=payload)
    assert response.status_code == 400
    assert response.json()["details"]["fieldErrors"][field] == [message]


def test_log_date_cannot_be_in_the_future(client: TestClient, customer: dict) -> None:
    tomorrow = (date.today() + timedelta(days=1)).isoformat()
    response = client.post(
        f"/api/customers/{customer['id']}/logs",
        json={"logDate": tomorrow, "method": "電話", "notes": "明天才會發生的紀錄。"},
    )
    assert response.status_code == 400
    assert response.json()["details"]["fieldErrors"]["logDate"] == ["日期不可為未來日期"]

    today = client.post(
        f"/api/customers/{customer['id']}/logs",
        json={"logDate": date.today().isoformat(), "method": "電話", "notes": "今天的紀錄是允許的。"},
    )
    assert today.status_code == 201


def test_unknown_log_is_not_found(client: TestClient, customer: dict) -> None:
    response = client.delete(f"/api/customers/{customer['id']}/logs/9999")
    assert response.status_code == 404
    assert response.json()["error"] == "開發紀錄不存在"
