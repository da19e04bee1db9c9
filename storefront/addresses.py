"""User addresses: shipping and billing addresses with one default per type."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import NotFoundError, ServiceError, ValidationError
from storefront.users import Address

ADDRESS_TYPES = ("shipping", "billing")

# ISO 3166-1 alpha-2 codes accepted for addresses.
VALID_COUNTRIES = frozenset({"IN", "US", "GB", "CA", "AU", "DE", "FR", "JP", "SG", "AE"})

_UPDATABLE = (
    "type", "first_name", "last_name", "company", "address_line1", "address_line2",
    "city", "state", "postal_code", "phone", "is_default",
)


def _check_type(address_type: str) -> None:
    if address_type not in ADDRESS_TYPES:
        raise ValidationError(f"type must be one of: {' '.join(ADDRESS_TYPES)}")


def _check_country_length(country: str) -> None:
    if len(country) != 2:
        raise ValidationError("country must be a 2-letter code")


def _validate_country_code(country_code: str) -> None:
    if country_code.upper() not in VALID_COUNTRIES:
        raise ValidationError(f"invalid country code: {country_code}")


@dataclass
class CreateAddressRequest:
    """Data for a new address."""

    type: str
    first_name: str
    last_name: str
    address_line1: str
    city: str
    state: str
    postal_code: str
    country: str
    company: str = ""
    address_line2: str = ""
    phone: str = ""
    is_default: bool = False

    def __post_init__(self):
        for name in (
            "type", "first_name", "last_name", "address_line1",
            "city", "state", "postal_code", "country",
        ):
            if not getattr(self, name):
                raise ValidationError(f"{name} is required")
        _check_type(self.type)
        _check_country_length(self.country)


@dataclass
class UpdateAddressRequest:
    """Fields of an address to change; None leaves a field as it is."""

    type: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None

    def __post_init__(self):
        if self.type is not None:
            _check_type(self.type)
        if self.country is not None:
            _check_country_length(self.country)


class AddressService:
    """Business rules for user addresses."""

    def __init__(self, session: Session):
        self._session = session

    def get_user_addresses(self, user_id: int, address_type: str = "") -> list[Address]:
        """A user's addresses, default ones first, newest next."""
        stmt = select(Address).where(Address.user_id == user_id)
        if address_type:
            stmt = stmt.where(Address.type == address_type)
        return self._list(stmt)

    def get_address(self, user_id: int, address_id: int) -> Address:
        """One address belonging to the user."""
        address = self._session.scalar(
            select(Address).where(Address.id == address_id, Address.user_id == user_id)
        )
        if address is None:
            raise NotFoundError("address not found")
        return address

    def create_address(self, user_id: int, request: CreateAddressRequest) -> Address:
        """Create an address; a default one replaces the previous default of its type."""
        _validate_country_code(request.country)
        try:
            if request.is_default:
                self._unset_defaults(user_id, request.type)
            address = Address(
                user_id=user_id,
                type=request.type,
                first_name=request.first_name,
                last_name=request.last_name,
                company=request.company,
                address_line1=request.address_line1,
                address_line2=request.address_line2,
                city=request.city,
                state=request.state,
                postal_code=request.postal_code,
                country=request.country.upper(),
                phone=request.phone,
                is_default=request.is_default,
            )
            self._session.add(address)
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to create address: {exc}") from exc
        return address

    def update_address(
        self, user_id: int, address_id: int, request: UpdateAddressRequest
    ) -> Address:
        """Change an address of the user."""
        address = self.get_address(user_id, address_id)
        if request.country is not None:
            _validate_country_code(request.country)

        updates = {
            name: getattr(request, name)
            for name in _UPDATABLE
            if getattr(request, name) is not None
        }
        if request.country is not None:
            updates["country"] = request.country.upper()

        try:
            if request.is_default:
                self._unset_defaults(user_id, request.type or address.type)
            for name, value in updates.items():
                setattr(address, name, value)
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to update address: {exc}") from exc
        return self.get_address(user_id, address_id)

    def delete_address(self, user_id: int, address_id: int) -> None:
        """Remove an address of the user."""
        address = self.get_address(user_id, address_id)
        try:
            self._session.delete(address)
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to delete address: {exc}") from exc

    def set_default_address(self, user_id: int, address_id: int, address_type: str) -> None:
        """Make an address the default of the given type, changing its type if needed."""
        if address_type not in ADDRESS_TYPES:
            raise ValidationError("invalid address type. Must be 'shipping' or 'billing'")
        address = self.get_address(user_id, address_id)
        try:
            self._unset_defaults(user_id, address_type)
            address.is_default = True
            address.type = address_type
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to set default address: {exc}") from exc

    def get_default_address(self, user_id: int, address_type: str) -> Address:
        """The user's default address of a type."""
        address = self._session.scalar(
            select(Address).where(
                Address.user_id == user_id,
                Address.type == address_type,
                Address.is_default.is_(True),
            )
        )
        if address is None:
            raise NotFoundError(f"no default {address_type} address found")
        return address

    def validate_address(self, address: Address) -> None:
        """Check that an address is complete enough to ship an order to."""
        required = (
            ("first_name", "first name"),
            ("last_name", "last name"),
            ("address_line1", "address line 1"),
            ("city", "city"),
            ("state", "state"),
            ("postal_code", "postal code"),
            ("country", "country"),
        )
        for attribute, label in required:
            if not getattr(address, attribute):
                raise ValidationError(f"{label} is required")
        _validate_country_code(address.country)

    def get_address_count(self, user_id: int) -> int:
        """Number of addresses the user has."""
        return self._session.scalar(
            select(func.count()).select_from(Address).where(Address.user_id == user_id)
        ) or 0

    def get_addresses_by_type(self, user_id: int, address_type: str) -> list[Address]:
        """The user's addresses of one type."""
        return self._list(
            select(Address).where(Address.user_id == user_id, Address.type == address_type)
        )

    def _list(self, stmt) -> list[Address]:
        try:
            return list(
                self._session.scalars(
                    stmt.order_by(
                        Address.is_default.desc(), Address.created_at.desc(), Address.id.desc()
                    )
                ).all()
            )
        except SQLAlchemyError as exc:
            raise ServiceError(f"failed to retrieve addresses: {exc}") from exc

    def _unset_defaults(self, user_id: int, address_type: str) -> None:
        for address in self._session.scalars(
            select(Address).where(
                Address.user_id == user_id,
                Address.type == address_type,
                Address.is_default.is_(True),
            )
        ).all():
            address.is_default = False
        self._session.flush()