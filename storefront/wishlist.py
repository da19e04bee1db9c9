"""Wishlists: saved products with availability, prices and summaries."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import (
    ConflictError,
    NotFoundError,
    Product,
    ProductVariant,
    ServiceError,
    ValidationError,
    WishlistItem,
)

SORT_FIELDS = frozenset({"created_at", "added_at", "product_id"})
DEFAULT_SORT_FIELD = "added_at"
DEFAULT_SORT_ORDER = "desc"
RECENT_DAYS = 7
ALREADY_EXISTS = "item already exists in wishlist"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class WishlistItemResponse:
    """A wishlist entry with its product details and current price."""

    id: int
    product_id: int
    product_variant_id: Optional[int] = None
    added_at: Optional[datetime] = None
    product: Optional[Product] = None
    product_variant: Optional[ProductVariant] = None
    is_available: bool = False
    current_price: int = 0
    price_changed: bool = False
    original_price: int = 0


@dataclass
class WishlistSummary:
    """Counts and values over wishlist entries; prices in cents, average in units."""

    total_items: int = 0
    available_items: int = 0
    unavailable_items: int = 0
    total_value: int = 0
    average_price: float = 0.0
    recently_added: int = 0


@dataclass
class Pagination:
    """Paging details of a list response."""

    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


@dataclass
class WishlistResponse:
    """A page of wishlist entries with a summary."""

    items: list[WishlistItemResponse]
    count: int
    pagination: Pagination
    summary: WishlistSummary


@dataclass
class AddToWishlistRequest:
    """A product, and optionally one of its variants, to save."""

    product_id: int
    product_variant_id: Optional[int] = None


@dataclass
class BulkAddResult:
    """Outcome of adding several products at once."""

    added: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)


def _order_by(sort_by: str, sort_order: str):
    if sort_by not in SORT_FIELDS:
        sort_by = DEFAULT_SORT_FIELD
    if sort_order not in ("asc", "desc"):
        sort_order = DEFAULT_SORT_ORDER
    column = getattr(WishlistItem, sort_by)
    if sort_order == "desc":
        return column.desc(), WishlistItem.id.desc()
    return column.asc(), WishlistItem.id.asc()


class WishlistService:
    """Business rules for user wishlists."""

    def __init__(self, session: Session):
        self._session = session

    def get_wishlist(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        sort_by: str = DEFAULT_SORT_FIELD,
        sort_order: str = DEFAULT_SORT_ORDER,
    ) -> WishlistResponse:
        """Return a sorted page of the user's wishlist."""
        if limit <= 0:
            raise ValidationError("limit must be positive")

        stmt = self._items(user_id)
        try:
            total = self._session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
            items = self._session.scalars(
                stmt.order_by(*_order_by(sort_by, sort_order))
                .offset(max(0, (page - 1) * limit))
                .limit(limit)
            ).all()
        except SQLAlchemyError as exc:
            raise ServiceError(f"failed to retrieve wishlist items: {exc}") from exc

        responses = [self._response(item) for item in items]
        total_pages = -(-total // limit)
        return WishlistResponse(
            items=responses,
            count=len(responses),
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=total_pages,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
            summary=self._summary(responses),
        )

    def add_to_wishlist(self, user_id: int, request: AddToWishlistRequest) -> WishlistItemResponse:
        """Save an active product (or active variant of it) to the wishlist."""
        product = self._session.scalar(
            select(Product).where(
                Product.id == request.product_id,
                Product.is_active.is_(True),
                Product.deleted_at.is_(None),
            )
        )
        if product is None:
            raise NotFoundError("product not found or inactive")

        if request.product_variant_id is not None:
            variant = self._session.scalar(
                select(ProductVariant).where(
                    ProductVariant.id == request.product_variant_id,
                    ProductVariant.product_id == request.product_id,
                    ProductVariant.is_active.is_(True),
                    ProductVariant.deleted_at.is_(None),
                )
            )
            if variant is None:
                raise NotFoundError("product variant not found or inactive")

        if self.is_in_wishlist(user_id, request.product_id, request.product_variant_id):
            raise ConflictError(ALREADY_EXISTS)

        item = WishlistItem(
            user_id=user_id,
            product_id=request.product_id,
            product_variant_id=request.product_variant_id,
            added_at=_utcnow(),
        )
        try:
            self._session.add(item)
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to add item to wishlist: {exc}") from exc
        return self._response(item)

    def remove_from_wishlist(
        self, user_id: int, product_id: int, variant_id: Optional[int] = None
    ) -> None:
        """Remove one entry from the wishlist."""
        items = self._session.scalars(self._matching(user_id, product_id, variant_id)).all()
        if not items:
            raise NotFoundError("item not found in wishlist")
        now = _utcnow()
        for item in items:
            item.deleted_at = now
        self._commit("failed to remove item from wishlist")

    def clear_wishlist(self, user_id: int) -> None:
        """Remove every entry from the user's wishlist."""
        now = _utcnow()
        for item in self._session.scalars(self._items(user_id)).all():
            item.deleted_at = now
        self._commit("failed to clear wishlist")

    def get_wishlist_count(self, user_id: int) -> int:
        """Number of entries in the user's wishlist."""
        return self._session.scalar(
            select(func.count()).select_from(self._items(user_id).subquery())
        ) or 0

    def is_in_wishlist(
        self, user_id: int, product_id: int, variant_id: Optional[int] = None
    ) -> bool:
        """Whether the product (or exact variant) is in the user's wishlist."""
        count = self._session.scalar(
            select(func.count()).select_from(
                self._matching(user_id, product_id, variant_id).subquery()
            )
        )
        return bool(count)

    def bulk_add_to_wishlist(self, user_id: int, product_ids: list[int]) -> BulkAddResult:
        """Add several products, reporting which were added, skipped or failed."""
        result = BulkAddResult()
        for product_id in product_ids:
            try:
                self.add_to_wishlist(user_id, AddToWishlistRequest(product_id=product_id))
            except ServiceError as exc:
                if str(exc) == ALREADY_EXISTS:
                    result.skipped.append(product_id)
                    result.messages.append(f"Product {product_id} already in wishlist")
                else:
                    result.failed.append(product_id)
                    result.messages.append(f"Product {product_id} failed: {exc}")
            else:
                result.added.append(product_id)
        return result

    def get_wishlist_summary(self, user_id: int) -> WishlistSummary:
        """Summary over the whole wishlist."""
        total = self.get_wishlist_count(user_id)
        if total == 0:
            return WishlistSummary()
        return self.get_wishlist(user_id, 1, total, "created_at", "desc").summary

    def _items(self, user_id: int):
        return select(WishlistItem).where(
            WishlistItem.user_id == user_id, WishlistItem.deleted_at.is_(None)
        )

    def _matching(self, user_id: int, product_id: int, variant_id: Optional[int]):
        stmt = self._items(user_id).where(WishlistItem.product_id == product_id)
        if variant_id is None:
            return stmt.where(WishlistItem.product_variant_id.is_(None))
        return stmt.where(WishlistItem.product_variant_id == variant_id)

    def _response(self, item: WishlistItem) -> WishlistItemResponse:
        response = WishlistItemResponse(
            id=item.id,
            product_id=item.product_id,
            product_variant_id=item.product_variant_id,
            added_at=item.added_at,
        )
        product = self._session.scalar(
            select(Product).where(Product.id == item.product_id, Product.deleted_at.is_(None))
        )
        if product is None:
            return response
        response.product = product
        response.is_available = bool(product.is_active)

        if item.product_variant_id is not None:
            variant = self._session.scalar(
                select(ProductVariant).where(
                    ProductVariant.id == item.product_variant_id,
                    ProductVariant.deleted_at.is_(None),
                )
            )
            if variant is not None:
                response.product_variant = variant
                response.is_available = response.is_available and bool(variant.is_active)

        response.current_price = product.price
        if response.product_variant is not None and (response.product_variant.price or 0) > 0:
            response.current_price = response.product_variant.price
        response.price_changed = False
        response.original_price = response.current_price
        return response

    @staticmethod
    def _summary(items: list[WishlistItemResponse]) -> WishlistSummary:
        summary = WishlistSummary(total_items=len(items))
        threshold = _utcnow() - timedelta(days=RECENT_DAYS)
        for item in items:
            if item.is_available:
                summary.available_items += 1
                summary.total_value += item.current_price
            else:
                summary.unavailable_items += 1
            if item.added_at is not None and item.added_at > threshold:
                summary.recently_added += 1
        if summary.available_items:
            summary.average_price = summary.total_value / summary.available_items / 100
        return summary

    def _commit(self, message: str) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"{message}: {exc}") from exc