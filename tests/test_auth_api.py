from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from prospect_crm.core.auth import create_access_token, hash_password, verify_password
from prospect_crm.core.config import get_settings
from prospect_crm.core.database import Base, get_db
from prospect_crm.crm.models import Category, Customer, User
from prospect_crm.main import app
from prospect_crm.seed import DEFAULT_CATEGORIES, SAMPLE_CUSTOMERS, SeedHelper


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


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def user(db_session: Session) -> User:
    user = User(username="admin", password_hash=hash_password("admin123"))
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_login_returns_token_usable_for_me(client: TestClient, user: User) -> None:
    response = client.post("/api/auth/login", json={"username": "admin", "password": "admin123"})
    assert response.status_code == 200
    body = response.json()
    assert body["tokenType"] == "bearer"

    me = client.get("/api/me", headers={"Authorization": f"Bearer {body['accessToken']}"})
    assert me.status_code == 200
    assert me.json() == {"id": user.id, "username": "admin"}


def test_login_rejects_wrong_password(client: TestClient, user: User) -> None:
    response = client.post("/api/auth/login", json={"username": "admin", "password": "wrong"})
    assert response.status_code == 401
    assert response.json()["error"] == "帳號或密碼錯誤"

    unknown = client.post("/api/auth/login", json={"username": "nobody", "password": "admin123"})
    assert unknown.status_code == 401


def test_login_requires_credentials(client: TestClient) -> None:
    response = client.post("/api/auth/login", json={"username": "admin"})
    assert response.status_code == 400
    assert response.json()["details"]["fieldErrors"]["password"] == ["此欄位為必填"]


@pytest.mark.parametrize(
    "path",
    ["/api/customers", "/api/customers/pending", "/api/categories", "/api/analytics", "/api/me"],
)
def test_protected_routes_require_token(client: TestClient, path: str) -> None:
    response = client.get(path)
    assert response.status_code == 401
    body = response.json()
    assert body["error"] == "未授權"
    assert body["correlationId"] == response.headers["x-correlation-id"]


def test_tampered_and_non_numeric_tokens_are_rejected(client: TestClient, user: User) -> None:
    token = create_access_token(user.id, user.username)
    tampered = client.get("/api/customers", headers={"Authorization": f"Bearer {token}x"})
    assert tampered.status_code == 401

    settings = get_settings()
    odd_subject = jwt.encode({"sub": "admin", "name": "admin"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    response = client.get("/api/customers", headers={"Authorization": f"Bearer {odd_subject}"})
    assert response.status_code == 401


def test_token_scopes_customer_list_to_its_owner(client: TestClient, user: User) -> None:
    token = create_access_token(user.id, user.username)
    headers = {"Authorization": f"Bearer {token}"}

    created = client.post(
        "/api/customers",
        headers=headers,
        json={
            "company": "動感幼稚園",
            "category": "學校",
            "address": "春日部市雙葉町 1-1",
            "level": "L1",
            "contacts": [{"name": "吉永老師"}],
        },
    )
    assert created.status_code == 201
    assert created.json()["userId"] == user.id

    listing = client.get("/api/customers", headers=headers)
    assert [item["id"] for item in listing.json()["items"]] == [created.json()["id"]]


def test_password_hashing_round_trip() -> None:
    hashed = hash_password("secret-pass")

    assert hashed != "secret-pass"
    assert verify_password("secret-pass", hashed)
    assert not verify_password("other", hashed)
    assert not verify_password("secret-pass", "not-a-bcrypt-hash")


def test_seed_helper_is_idempotent(db_session: Session) -> None:
    helper = SeedHelper()
    owner = helper.run(db_session, "admin", "admin123")
    helper.run(db_session, "admin", "admin123")

    assert db_session.scalar(select(func.count(User.id))) == 1
    assert db_session.scalar(select(func.count(Category.id))) == len(DEFAULT_CATEGORIES)
    assert db_session.scalar(select(func.count(Customer.id)).where(Customer.user_id == owner.id)) == len(
        SAMPLE_CUSTOMERS
    )
    assert verify_password("admin123", owner.password_hash)
