"""Administrative management of user accounts."""

import csv
import io
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, inspect, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from storefront.models import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from storefront.users import Address, User

DATE_FORMAT = "%Y-%m-%d"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
EXPORT_STAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

CSV_HEADERS = [
    "ID", "Email", "First Name", "Last Name", "Phone",
    "Is Active", "Is Admin", "Email Verified", "Created At", "Last Login",
]
CSV_STATS_HEADERS = ["Order Count", "Total Spent", "Address Count", "Last Order"]

_ORDER_STATS_SQL = text(
    """
    SELECT
        COUNT(*) AS order_count,
        COALESCE(SUM(total_amount), 0) AS total_spent,
        MAX(created_at) AS last_order_at
    FROM orders
    WHERE user_id = :user_id AND status != 'cancelled'
    """
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class UserListRequest:
    """Filters, sorting and paging for listing users."""

    page: int = 1
    limit: int = 20
    search: str = ""
    status: str = ""
    role: str = ""
    sort_by: str = "created_at"
    sort_order: str = "desc"
    date_from: str = ""
    date_to: str = ""
    email_verified: Optional[bool] = None


@dataclass
class UserWithStats:
    """A user together with order and address statistics."""

    user: User
    order_count: int = 0
    total_spent: int = 0
    last_order_at: Optional[datetime] = None
    address_count: int = 0


@dataclass
class UserListResponse:
    """A page of users with paging details."""

    users: list[UserWithStats] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20
    total_pages: int = 0


@dataclass
class UserStatusUpdateRequest:
    """Activate or deactivate a user."""

    is_active: bool
    reason: str = ""


@dataclass
class UserAdminToggleRequest:
    """Grant or revoke administrator rights."""

    is_admin: bool
    reason: str = ""


@dataclass
class UserExportRequest:
    """Filters and format for exporting users."""

    format: str = "csv"
    status: str = ""
    role: str = ""
    date_from: str = ""
    date_to: str = ""
    email_verified: Optional[bool] = None
    include_stats: bool = False


def _parse_date(value: str) -> Optional[datetime]:
    try:
        return datetime.strptime(value, DATE_FORMAT)
    except ValueError:
        return None


def _parse_timestamp(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _apply_filters(stmt, status, role, email_verified, date_from, date_to):
    if status == "active":
        stmt = stmt.where(User.is_active.is_(True))
    elif status == "inactive":
        stmt = stmt.where(User.is_active.is_(False))

    if role == "admin":
        stmt = stmt.where(User.is_admin.is_(True))
    elif role == "user":
        stmt = stmt.where(User.is_admin.is_(False))

    if email_verified is not None:
        stmt = stmt.where(User.email_verified.is_(email_verified))

    if date_from and (start := _parse_date(date_from)) is not None:
        stmt = stmt.where(User.created_at >= start)
    if date_to and (end := _parse_date(date_to)) is not None:
        stmt = stmt.where(User.created_at <= end + timedelta(days=1) - timedelta(seconds=1))
    return stmt


def _public_copy(user: User, with_addresses: bool = False) -> User:
    """A detached copy of the user with the password hash blanked."""
    values = {column.key: getattr(user, column.key) for column in User.__table__.columns}
    values["password"] = ""
    copy = User(**values)
    if with_addresses:
        set_committed_value(copy, "addresses", list(user.addresses))
    return copy


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"cannot serialise {type(value).__name__}")


class AdminService:
    """Lists, inspects, moderates and exports user accounts."""

    def __init__(self, session: Session):
        self._session = session

    def get_users(self, request: UserListRequest) -> UserListResponse:
        """Return one page of users matching the request's filters."""
        if request.limit <= 0:
            raise ValidationError("limit must be positive")

        stmt = select(User).where(User.deleted_at.is_(None))
        if request.search:
            term = f"%{request.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(User.email).like(term),
                    func.lower(User.first_name).like(term),
                    func.lower(User.last_name).like(term),
                    User.phone.like(f"%{request.search}%"),
                )
            )
        stmt = _apply_filters(
            stmt,
            request.status,
            request.role,
            request.email_verified,
            request.date_from,
            request.date_to,
        )

        total = self._session.scalar(select(func.count()).select_from(stmt.subquery())) or 0

        column = User.__table__.columns.get(request.sort_by)
        if column is None or column.key == "password":
            raise ValidationError(f"failed to retrieve users: unknown sort field {request.sort_by!r}")
        descending = request.sort_order == "desc"
        order = column.desc() if descending else column.asc()
        tie_break = User.id.desc() if descending else User.id.asc()

        offset = max(0, (request.page - 1) * request.limit)
        users = self._session.scalars(
            stmt.order_by(order, tie_break).offset(offset).limit(request.limit)
        ).all()

        return UserListResponse(
            users=[self._with_stats(user) for user in users],
            total=total,
            page=request.page,
            limit=request.limit,
            total_pages=-(-total // request.limit),
        )

    def get_user(self, user_id: int) -> UserWithStats:
        """Return a single user with addresses and statistics."""
        user = self._find_user(user_id)
        return self._with_stats(user, with_addresses=True)

    def update_user_status(
        self, user_id: int, request: UserStatusUpdateRequest, admin_id: int
    ) -> None:
        """Activate or deactivate a user; admins cannot deactivate themselves."""
        user = self._find_user(user_id)
        if user_id == admin_id and not request.is_active:
            raise PermissionDeniedError("cannot deactivate your own account")
        user.is_active = request.is_active
        user.updated_at = _utcnow()
        self._session.commit()

    def toggle_user_admin(
        self, user_id: int, request: UserAdminToggleRequest, admin_id: int
    ) -> None:
        """Grant or revoke admin rights, keeping at least one admin."""
        user = self._find_user(user_id)
        if user_id == admin_id and not request.is_admin:
            raise PermissionDeniedError("cannot remove your own admin privileges")
        if not request.is_admin:
            remaining = self._session.scalar(
                select(func.count())
                .select_from(User)
                .where(
                    User.is_admin.is_(True),
                    User.id != user_id,
                    User.deleted_at.is_(None),
                )
            )
            if not remaining:
                raise ConflictError(
                    "cannot remove admin privileges: at least one admin must remain"
                )
        user.is_admin = request.is_admin
        user.updated_at = _utcnow()
        self._session.commit()

    def export_users(self, request: UserExportRequest) -> tuple[bytes, str]:
        """Export matching users as CSV or JSON; returns (data, filename)."""
        stmt = select(User).where(User.deleted_at.is_(None))
        stmt = _apply_filters(
            stmt,
            request.status,
            request.role,
            request.email_verified,
            request.date_from,
            request.date_to,
        )
        users = self._session.scalars(
            stmt.order_by(User.created_at.desc(), User.id.desc())
        ).all()

        if request.format == "csv":
            return self._csv_export(users, request.include_stats)
        if request.format == "json":
            return self._json_export(users, request.include_stats)
        raise ValidationError(f"unsupported export format: {request.format}")

    def _find_user(self, user_id: int) -> User:
        user = self._session.get(User, user_id)
        if user is None or user.deleted_at is not None:
            raise NotFoundError("user not found")
        return user

    def _with_stats(self, user: User, with_addresses: bool = False) -> UserWithStats:
        order_count, total_spent, last_order_at = self._order_stats(user.id)
        address_count = self._session.scalar(
            select(func.count()).select_from(Address).where(Address.user_id == user.id)
        ) or 0
        return UserWithStats(
            user=_public_copy(user, with_addresses),
            order_count=order_count,
            total_spent=total_spent,
            last_order_at=last_order_at,
            address_count=address_count,
        )

    def _order_stats(self, user_id: int) -> tuple[int, int, Optional[datetime]]:
        connection = self._session.connection()
        if not inspect(connection).has_table("orders"):
            return 0, 0, None
        try:
            row = self._session.execute(_ORDER_STATS_SQL, {"user_id": user_id}).one()
        except SQLAlchemyError:
            return 0, 0, None
        return int(row.order_count or 0), int(row.total_spent or 0), _parse_timestamp(
            row.last_order_at
        )

    def _csv_export(self, users, include_stats: bool) -> tuple[bytes, str]:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS + (CSV_STATS_HEADERS if include_stats else []))

        for user in users:
            flags = (user.is_active, user.is_admin, user.email_verified)
            record = [
                str(user.id),
                user.email,
                user.first_name,
                user.last_name,
                user.phone,
                *(str(bool(flag)).lower() for flag in flags),
                user.created_at.strftime(TIMESTAMP_FORMAT),
                user.last_login_at.strftime(TIMESTAMP_FORMAT) if user.last_login_at else "Never",
            ]
            if include_stats:
                stats = self._with_stats(user)
                record += [
                    str(stats.order_count),
                    f"{stats.total_spent / 100:.2f}",
                    str(stats.address_count),
                    stats.last_order_at.strftime(TIMESTAMP_FORMAT)
                    if stats.last_order_at
                    else "Never",
                ]
            writer.writerow(record)

        filename = f"users_export_{datetime.now().strftime(EXPORT_STAMP_FORMAT)}.csv"
        return buffer.getvalue().encode("utf-8"), filename

    def _json_export(self, users, include_stats: bool) -> tuple[bytes, str]:
        exported = []
        for user in users:
            entry = {
                "id": user.id,
                "email": user.email,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "phone": user.phone,
                "is_active": user.is_active,
                "is_admin": user.is_admin,
                "email_verified": user.email_verified,
                "created_at": user.created_at,
                "last_login_at": user.last_login_at,
            }
            if include_stats:
                stats = self._with_stats(user)
                entry["order_count"] = stats.order_count
                entry["total_spent"] = stats.total_spent / 100
                entry["address_count"] = stats.address_count
                entry["last_order_at"] = stats.last_order_at
            exported.append(entry)

        document = {
            "exported_at": datetime.now(),
            "total_users": len(users),
            "users": exported,
        }
        data = json.dumps(document, indent=2, sort_keys=True, default=_json_default)
        filename = f"users_export_{datetime.now().strftime(EXPORT_STAMP_FORMAT)}.json"
        return data.encode("utf-8"), filename