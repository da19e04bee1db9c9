import csv
import io
import json
from datetime import datetime

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from storefront.admin import (
    CSV_HEADERS,
    CSV_STATS_HEADERS,
    AdminService,
    UserAdminToggleRequest,
    UserExportRequest,
    UserListRequest,
    UserStatusUpdateRequest,
)
from storefront.models import (
    Base,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from storefront.users import Address, User

PASSWORD = "password"


@pytest.fixture
def session():
    engine = create_engine("sqlite://")
    Base.metadata.create_all(engine)
    with Session(engine) as db:
        yield db
    engine.dispose()


@pytest.fixture
def service(session):
    return AdminService(session)


def add_user(session, email, password=PASSWORD, **fields):
    user = User(email=email, password=password, **fields)
    session.add(user)
    session.commit()
    return user


def emails(response):
    return sorted(item.user.email for item in response.users)


def test_get_users_lists_all(session, service):
    for name in ("a", "b", "c"):
        add_user(session, f"{name}@example.com")
    response = service.get_users(UserListRequest())
    assert response.total == 3
    assert emails(response) == ["a@example.com", "b@example.com", "c@example.com"]


def test_get_users_pages_cover_everything(session, service):
    for name in ("a", "b", "c"):
        add_user(session, f"{name}@example.com")
    first = service.get_users(UserListRequest(page=1, limit=2))
    second = service.get_users(UserListRequest(page=2, limit=2))
    assert len(first.users) + len(second.users) == first.total
    assert set(emails(first)).isdisjoint(emails(second))
    assert first.total_pages == second.total_pages
    assert len(first.users) == first.limit


def test_get_users_blanks_password_without_touching_database(session, service):
    user = add_user(session, "a@example.com")
    response = service.get_users(UserListRequest())
    assert response.users[0].user.password == ""
    session.commit()
    session.refresh(user)
    assert user.password == PASSWORD


def test_get_users_excludes_soft_deleted(session, service):
    add_user(session, "a@example.com")
    add_user(session, "gone@example.com", deleted_at=datetime(2024, 1, 1))
    response = service.get_users(UserListRequest())
    assert emails(response) == ["a@example.com"]


def test_get_users_search_is_case_insensitive(session, service):
    add_user(session, "ada@example.com", first_name="Ada")
    add_user(session, "bob@example.com", first_name="Bob")
    response = service.get_users(UserListRequest(search="ADA"))
    assert emails(response) == ["ada@example.com"]


def test_get_users_status_and_role_filters(session, service):
    add_user(session, "on@example.com", is_active=True)
    add_user(session, "off@example.com", is_active=False)
    add_user(session, "boss@example.com", is_admin=True)
    inactive = service.get_users(UserListRequest(status="inactive"))
    admins = service.get_users(UserListRequest(role="admin"))
    everyone = service.get_users(UserListRequest(status="all", role="all"))
    assert emails(inactive) == ["off@example.com"]
    assert emails(admins) == ["boss@example.com"]
    assert everyone.total == 3


def test_get_users_email_verified_filter(session, service):
    add_user(session, "yes@example.com", email_verified=True)
    add_user(session, "no@example.com")
    response = service.get_users(UserListRequest(email_verified=True))
    assert emails(response) == ["yes@example.com"]


def test_get_users_date_range(session, service):
    add_user(session, "jan@example.com", created_at=datetime(2024, 1, 10, 18, 30))
    add_user(session, "feb@example.com", created_at=datetime(2024, 2, 10))
    later = service.get_users(UserListRequest(date_from="2024-02-01"))
    earlier = service.get_users(UserListRequest(date_to="2024-01-10"))
    ignored = service.get_users(UserListRequest(date_from="not-a-date"))
    assert emails(later) == ["feb@example.com"]
    assert emails(earlier) == ["jan@example.com"]
    assert ignored.total == 2


def test_get_users_sorting(session, service):
    for name in ("c", "a", "b"):
        add_user(session, f"{name}@example.com")
    ascending = service.get_users(UserListRequest(sort_by="email", sort_order="asc"))
    descending = service.get_users(UserListRequest(sort_by="email", sort_order="desc"))
    up = [item.user.email for item in ascending.users]
    down = [item.user.email for item in descending.users]
    assert up == sorted(up)
    assert down == list(reversed(up))


def test_get_users_rejects_unknown_sort(service):
    with pytest.raises(ValidationError):
        service.get_users(UserListRequest(sort_by="nonsense"))


def test_get_user_not_found(service):
    with pytest.raises(NotFoundError):
        service.get_user(999)


def test_get_user_counts_addresses(session, service):
    user = add_user(session, "a@example.com")
    user.addresses.append(Address(address_line1="1 Main St", city="Springfield"))
    user.addresses.append(Address(address_line1="2 High St", city="Shelbyville"))
    session.commit()
    result = service.get_user(user.id)
    assert result.address_count == len(result.user.addresses)
    assert [a.city for a in result.user.addresses] == ["Springfield", "Shelbyville"]
    assert result.user.password == ""


def test_get_user_without_orders_table_has_zero_stats(session, service):
    user = add_user(session, "a@example.com")
    result = service.get_user(user.id)
    assert (result.order_count, result.total_spent, result.last_order_at) == (0, 0, None)


def test_get_user_reads_order_stats(session, service):
    user = add_user(session, "a@example.com")
    session.execute(
        text(
            "CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER, "
            "total_amount INTEGER, status TEXT, created_at DATETIME)"
        )
    )
    session.execute(
        text(
            "INSERT INTO orders (user_id, total_amount, status, created_at) VALUES "
            "(:uid, 1250, 'delivered', '2024-03-01 10:00:00'), "
            "(:uid, 9999, 'cancelled', '2024-04-01 10:00:00')"
        ),
        {"uid": user.id},
    )
    result = service.get_user(user.id)
    assert result.order_count == 1
    assert result.total_spent == 1250
    assert result.last_order_at == datetime(2024, 3, 1, 10, 0, 0)


def test_update_user_status(session, service):
    user = add_user(session, "a@example.com")
    service.update_user_status(user.id, UserStatusUpdateRequest(is_active=False), admin_id=999)
    session.refresh(user)
    assert user.is_active is False


def test_update_user_status_cannot_deactivate_self(session, service):
    user = add_user(session, "a@example.com", is_admin=True)
    with pytest.raises(PermissionDeniedError):
        service.update_user_status(user.id, UserStatusUpdateRequest(is_active=False), user.id)


def test_update_user_status_unknown_user(service):
    with pytest.raises(NotFoundError):
        service.update_user_status(5, UserStatusUpdateRequest(is_active=True), 1)


def test_toggle_admin_grants_rights(session, service):
    admin = add_user(session, "boss@example.com", is_admin=True)
    user = add_user(session, "a@example.com")
    service.toggle_user_admin(user.id, UserAdminToggleRequest(is_admin=True), admin.id)
    session.refresh(user)
    assert user.is_admin is True


def test_toggle_admin_cannot_remove_own_rights(session, service):
    admin = add_user(session, "boss@example.com", is_admin=True)
    with pytest.raises(PermissionDeniedError):
        service.toggle_user_admin(admin.id, UserAdminToggleRequest(is_admin=False), admin.id)


def test_toggle_admin_keeps_last_admin(session, service):
    last = add_user(session, "boss@example.com", is_admin=True)
    other = add_user(session, "a@example.com")
    with pytest.raises(ConflictError):
        service.toggle_user_admin(last.id, UserAdminToggleRequest(is_admin=False), other.id)


def test_toggle_admin_revokes_when_another_remains(session, service):
    first = add_user(session, "one@example.com", is_admin=True)
    second = add_user(session, "two@example.com", is_admin=True)
    service.toggle_user_admin(second.id, UserAdminToggleRequest(is_admin=False), first.id)
    session.refresh(second)
    assert second.is_admin is False


def read_csv(data):
    return list(csv.reader(io.StringIO(data.decode("utf-8"))))


def test_export_csv(session, service):
    add_user(session, "a@example.com", first_name="Ada", is_active=True)
    data, filename = service.export_users(UserExportRequest(format="csv"))
    rows = read_csv(data)
    assert rows[0] == CSV_HEADERS
    assert rows[1][1] == "a@example.com"
    assert rows[1][5] == "true"
    assert rows[1][-1] == "Never"
    assert filename.startswith("users_export_") and filename.endswith(".csv")


def test_export_csv_with_stats(session, service):
    add_user(session, "a@example.com")
    data, _ = service.export_users(UserExportRequest(format="csv", include_stats=True))
    rows = read_csv(data)
    assert rows[0] == CSV_HEADERS + CSV_STATS_HEADERS
    assert len(rows[1]) == len(rows[0])
    assert rows[1][-1] == "Never"


def test_export_respects_filters(session, service):
    add_user(session, "on@example.com", is_active=True)
    add_user(session, "off@example.com", is_active=False)
    data, _ = service.export_users(UserExportRequest(format="csv", status="active"))
    rows = read_csv(data)
    assert [row[1] for row in rows[1:]] == ["on@example.com"]


def test_export_json(session, service):
    add_user(session, "a@example.com")
    add_user(session, "b@example.com")
    data, filename = service.export_users(UserExportRequest(format="json", include_stats=True))
    document = json.loads(data)
    assert document["total_users"] == len(document["users"])
    assert sorted(u["email"] for u in document["users"]) == ["a@example.com", "b@example.com"]
    assert all("password" not in u for u in document["users"])
    assert all(u["order_count"] == 0 for u in document["users"])
    assert filename.endswith(".json")


def test_export_unsupported_format(service):
    with pytest.raises(ValidationError):
        service.export_users(UserExportRequest(format="xml"))