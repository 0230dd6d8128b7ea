import copy
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from config import get_settings
from database import Base, session_scope
from models import AuthIdentity, Profile, Role, new_id
from periods import local_today
from security import hash_password
from storage import LocalBlobStorage
from web_sessions import SessionRegistry

ADMIN_EMAIL = "admin@financeapp.com"


@pytest.fixture()
def factory(tmp_path):
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    settings = copy.copy(get_settings())
    settings.bootstrap_admin_email = ADMIN_EMAIL
    registry = SessionRegistry(session_factory, settings=settings)
    storage = LocalBlobStorage(tmp_path / "avatars")

    main.app.dependency_overrides[main.get_session_factory] = lambda: session_factory
    main.app.dependency_overrides[main.get_registry] = lambda: registry
    main.app.dependency_overrides[main.get_blob_storage] = lambda: storage
    yield session_factory
    main.app.dependency_overrides.clear()


def seed_user(factory, email, name, role=Role.employee, confirmed=True) -> str:
    user_id = new_id()
    with session_scope(factory) as session:
        session.add(
            AuthIdentity(
                id=user_id,
                email=email,
                password_hash=hash_password("secret1"),
                name=name,
                email_confirmed_at=datetime.utcnow() if confirmed else None,
            )
        )
        session.add(Profile(id=user_id, name=name, email=email, role=role))
    return user_id


def signed_in_client(email: str, password: str = "secret1"):
    client = TestClient(main.app)
    response = client.post("/auth/sign-in", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return client, {"X-CSRF-Token": response.json()["csrf_token"]}


def add_category(client, headers, name="Food", txn_type="expense") -> str:
    response = client.post(
        "/categories", json={"name": name, "type": txn_type}, headers=headers
    )
    assert response.status_code == 201, response.text
    return response.json()["category"]["id"]


def add_transaction(client, headers, category_id, amount=25_000, txn_type="expense"):
    response = client.post(
        "/transactions",
        json={
            "date": local_today().isoformat(),
            "type": txn_type,
            "amount_cents": amount,
            "category_id": category_id,
            "description": "Lunch",
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["transaction"]


def test_sign_in_returns_session_with_profile(factory) -> None:
    seed_user(factory, "rina@example.com", "Rina")

    client, _ = signed_in_client("RINA@example.com")
    session = client.get("/auth/session").json()

    assert session["authenticated"] is True
    assert session["loading"] is False
    assert session["profile"]["name"] == "Rina"
    assert session["profile"]["role"] == "employee"
    assert session["is_admin"] is False
    assert session["csrf_token"]


def test_sign_in_failures_carry_reason(factory) -> None:
    seed_user(factory, "rina@example.com", "Rina")
    seed_user(factory, "new@example.com", "New", confirmed=False)
    client = TestClient(main.app)

    wrong = client.post(
        "/auth/sign-in", json={"email": "rina@example.com", "password": "nope"}
    )
    unconfirmed = client.post(
        "/auth/sign-in", json={"email": "new@example.com", "password": "secret1"}
    )

    assert wrong.status_code == 401
    assert wrong.json()["reason"] == "invalid_credentials"
    assert unconfirmed.status_code == 401
    assert unconfirmed.json()["reason"] == "email_not_confirmed"


def test_sign_up_validates_and_defers_sign_in(factory) -> None:
    client = TestClient(main.app)

    mismatch = client.post(
        "/auth/sign-up",
        json={
            "email": "dewi@example.com",
            "password": "secret1",
            "confirm_password": "secret2",
            "name": "Dewi",
        },
    )
    created = client.post(
        "/auth/sign-up",
        json={
            "email": "dewi@example.com",
            "password": "secret1",
            "confirm_password": "secret1",
            "name": "Dewi",
        },
    )
    early = client.post(
        "/auth/sign-in", json={"email": "dewi@example.com", "password": "secret1"}
    )

    assert mismatch.status_code == 422
    assert created.status_code == 200
    assert created.json()["requires_confirmation"] is True
    assert "confirmation_token" not in created.json()
    assert early.json()["reason"] == "email_not_confirmed"


def test_pages_require_a_session(factory) -> None:
    client = TestClient(main.app)

    assert client.get("/dashboard").status_code == 401
    assert client.get("/transactions").status_code == 401


def test_mutations_require_csrf_token(factory) -> None:
    seed_user(factory, ADMIN_EMAIL, "Owner", Role.admin)
    client, _ = signed_in_client(ADMIN_EMAIL)

    response = client.post("/categories", json={"name": "Food", "type": "expense"})

    assert response.status_code == 403
    assert response.json()["detail"] == "Invalid CSRF token"


def test_employees_only_modify_their_own_transactions(factory) -> None:
    seed_user(factory, ADMIN_EMAIL, "Owner", Role.admin)
    seed_user(factory, "rina@example.com", "Rina")
    seed_user(factory, "budi@example.com", "Budi")
    admin, admin_headers = signed_in_client(ADMIN_EMAIL)
    rina, rina_headers = signed_in_client("rina@example.com")
    budi, budi_headers = signed_in_client("budi@example.com")
    food = add_category(admin, admin_headers)

    txn = add_transaction(rina, rina_headers, food)
    seen_by_budi = budi.get("/transactions").json()
    denied = budi.delete(f"/transactions/{txn['id']}", headers=budi_headers)
    seen_by_admin = admin.get("/transactions").json()
    deleted = admin.delete(f"/transactions/{txn['id']}", headers=admin_headers)

    assert txn["employee_name"] == "Rina"
    assert [row["can_modify"] for row in seen_by_budi] == [False]
    assert denied.status_code == 403
    assert denied.json()["reason"] == "permission_denied"
    assert [row["can_modify"] for row in seen_by_admin] == [True]
    assert deleted.json()["message"] == "Transaction deleted"


def test_category_type_mismatch_is_a_conflict(factory) -> None:
    seed_user(factory, ADMIN_EMAIL, "Owner", Role.admin)
    admin, headers = signed_in_client(ADMIN_EMAIL)
    sales = add_category(admin, headers, "Sales", "income")

    response = admin.post(
        "/transactions",
        json={
            "date": local_today().isoformat(),
            "type": "expense",
            "amount_cents": 100,
            "category_id": sales,
            "description": "Wrong side",
        },
        headers=headers,
    )

    assert response.status_code == 409
    assert response.json()["reason"] == "constraint"


def test_categories_and_users_are_admin_only(factory) -> None:
    seed_user(factory, "rina@example.com", "Rina")
    rina, headers = signed_in_client("rina@example.com")

    assert rina.post(
        "/categories", json={"name": "Food", "type": "expense"}, headers=headers
    ).status_code == 403
    assert rina.get("/users").status_code == 403


def test_admin_manages_users(factory) -> None:
    admin_id = seed_user(factory, ADMIN_EMAIL, "Owner", Role.admin)
    admin, headers = signed_in_client(ADMIN_EMAIL)

    created = admin.post(
        "/users",
        json={
            "email": "Budi@Example.com",
            "password": "secret1",
            "name": "Budi",
            "role": "employee",
        },
        headers=headers,
    )
    user_id = created.json()["user"]["id"]
    promoted = admin.put(
        f"/users/{user_id}", json={"name": "Budi S.", "role": "admin"}, headers=headers
    )
    self_delete = admin.delete(f"/users/{admin_id}", headers=headers)
    deactivated = admin.delete(f"/users/{user_id}", headers=headers)
    active = admin.get("/users").json()
    everyone = admin.get("/users", params={"include_inactive": True}).json()
    locked_out = TestClient(main.app).post(
        "/auth/sign-in", json={"email": "budi@example.com", "password": "secret1"}
    )

    assert created.status_code == 201
    assert created.json()["user"]["email"] == "budi@example.com"
    assert promoted.json()["user"]["role"] == "admin"
    assert self_delete.status_code == 400
    assert deactivated.json()["message"] == "User deactivated"
    assert [u["id"] for u in active] == [admin_id]
    assert len(everyone) == 2
    assert locked_out.status_code == 403
    assert locked_out.json()["reason"] == "account_disabled"


def test_dashboard_and_reports(factory) -> None:
    seed_user(factory, ADMIN_EMAIL, "Owner", Role.admin)
    admin, headers = signed_in_client(ADMIN_EMAIL)
    sales = add_category(admin, headers, "Sales", "income")
    food = add_category(admin, headers, "Food", "expense")
    add_transaction(admin, headers, sales, amount=500_000, txn_type="income")
    add_transaction(admin, headers, food, amount=120_000)

    dashboard = admin.get("/dashboard").json()
    report = admin.get("/reports", params={"period": "weekly"}).json()
    bad_period = admin.get("/reports", params={"period": "yearly"})
    exported = admin.get("/reports/export.csv", params={"period": "all"})

    assert dashboard["greeting_name"] == "Owner"
    assert dashboard["total_income"] == 500_000
    assert dashboard["total_expense"] == 120_000
    assert dashboard["all_time_profit"] == 380_000
    assert len(dashboard["weekly_series"]) == 7
    assert len(dashboard["recent_transactions"]) == 2
    assert report["period"] == "Last 7 days"
    assert report["summary"] == {
        "income": 500_000,
        "expense": 120_000,
        "net": 380_000,
        "count": 2,
    }
    assert bad_period.status_code == 400
    assert exported.headers["content-type"].startswith("text/csv")
    assert exported.text.splitlines()[0] == "Date,Description,Type,Amount,Category,Employee"
    assert len(exported.text.splitlines()) == 3


def test_profile_updates_and_avatar(factory) -> None:
    seed_user(factory, "rina@example.com", "Rina")
    client, headers = signed_in_client("rina@example.com")

    renamed = client.put("/profile", json={"name": "Rina Sari"}, headers=headers)
    uploaded = client.post(
        "/profile/avatar",
        files={"file": ("me.png", b"\x89PNG fake", "image/png")},
        headers=headers,
    )
    rejected = client.post(
        "/profile/avatar",
        files={"file": ("me.txt", b"hello", "text/plain")},
        headers=headers,
    )
    profile = client.get("/profile").json()

    assert renamed.json()["profile"]["name"] == "Rina Sari"
    assert uploaded.status_code == 200
    assert rejected.status_code == 400
    assert profile["profile"]["name"] == "Rina Sari"
    assert profile["avatar_url"] == uploaded.json()["avatar_url"]


def test_password_change_and_sign_out(factory) -> None:
    seed_user(factory, "rina@example.com", "Rina")
    client, headers = signed_in_client("rina@example.com")

    wrong = client.post(
        "/profile/password",
        json={
            "current_password": "nope",
            "new_password": "secret2",
            "confirm_password": "secret2",
        },
        headers=headers,
    )
    changed = client.post(
        "/profile/password",
        json={
            "current_password": "secret1",
            "new_password": "secret2",
            "confirm_password": "secret2",
        },
        headers=headers,
    )
    signed_out = client.post("/auth/sign-out", headers=headers)
    after = client.get("/dashboard")

    assert wrong.status_code == 401
    assert changed.json()["message"] == "Password changed"
    assert signed_out.json()["authenticated"] is False
    assert after.status_code == 401
    signed_in_client("rina@example.com", "secret2")


def test_sign_out_requires_csrf_token_while_signed_in(factory) -> None:
    seed_user(factory, "rina@example.com", "Rina")
    client, headers = signed_in_client("rina@example.com")

    forged = client.post("/auth/sign-out")
    still_in = client.get("/auth/session").json()
    signed_out = client.post("/auth/sign-out", headers=headers)
    repeated = client.post("/auth/sign-out")

    assert forged.status_code == 403
    assert still_in["authenticated"] is True
    assert signed_out.json()["authenticated"] is False
    assert repeated.status_code == 200


def test_demoted_admin_session_cannot_manage_categories(factory) -> None:
    seed_user(factory, ADMIN_EMAIL, "Owner", Role.admin)
    dewi_id = seed_user(factory, "dewi@example.com", "Dewi", Role.admin)
    owner, owner_headers = signed_in_client(ADMIN_EMAIL)
    dewi, dewi_headers = signed_in_client("dewi@example.com")

    demoted = owner.put(
        f"/users/{dewi_id}", json={"name": "Dewi", "role": "employee"}, headers=owner_headers
    )
    attempt = dewi.post(
        "/categories", json={"name": "Travel", "type": "expense"}, headers=dewi_headers
    )

    assert demoted.json()["user"]["role"] == "employee"
    assert attempt.status_code == 403
    assert attempt.json()["reason"] == "permission_denied"
