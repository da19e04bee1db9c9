"""Product catalogue: listing, lookup, creation, editing, removal and stock."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from storefront.categories import generate_slug
from storefront.models import (
    ConflictError,
    NotFoundError,
    Product,
    ServiceError,
    ValidationError,
)

SORT_FIELDS = frozenset({"name", "price", "created_at", "updated_at", "quantity"})
DEFAULT_SORT_FIELD = "created_at"
DEFAULT_SORT_ORDER = "desc"

_UPDATABLE = (
    "description", "short_desc", "price", "compare_price", "cost_price",
    "category_id", "brand_id", "weight", "dimensions", "is_active",
    "is_featured", "is_digital", "requires_shipping", "track_quantity",
    "quantity", "low_stock_threshold", "seo_title", "seo_description", "tags",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _live(stmt):
    return stmt.where(Product.deleted_at.is_(None))


@dataclass
class ProductListRequest:
    """Filters, sorting and paging for listing products."""

    page: int = 1
    limit: int = 20
    category_id: int = 0
    brand_id: int = 0
    search: str = ""
    sort_by: str = DEFAULT_SORT_FIELD
    sort_order: str = DEFAULT_SORT_ORDER
    min_price: int = 0
    max_price: int = 0
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


@dataclass
class ProductCreateRequest:
    """Data for a new product; prices are in cents."""

    sku: str
    name: str
    price: int
    category_id: int
    description: str = ""
    short_desc: str = ""
    compare_price: int = 0
    cost_price: int = 0
    brand_id: Optional[int] = None
    weight: float = 0.0
    dimensions: str = ""
    is_active: bool = False
    is_featured: bool = False
    is_digital: bool = False
    requires_shipping: bool = False
    track_quantity: bool = False
    quantity: int = 0
    low_stock_threshold: int = 0
    seo_title: str = ""
    seo_description: str = ""
    tags: str = ""

    def __post_init__(self):
        for name in ("sku", "name", "price", "category_id"):
            if not getattr(self, name):
                raise ValidationError(f"{name} is required")


@dataclass
class ProductUpdateRequest:
    """Fields of a product to change; None leaves a field as it is."""

    name: Optional[str] = None
    description: Optional[str] = None
    short_desc: Optional[str] = None
    price: Optional[int] = None
    compare_price: Optional[int] = None
    cost_price: Optional[int] = None
    category_id: Optional[int] = None
    brand_id: Optional[int] = None
    weight: Optional[float] = None
    dimensions: Optional[str] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_digital: Optional[bool] = None
    requires_shipping: Optional[bool] = None
    track_quantity: Optional[bool] = None
    quantity: Optional[int] = None
    low_stock_threshold: Optional[int] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    tags: Optional[str] = None


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
class ProductResponse:
    """A page of products."""

    products: list[Product] = field(default_factory=list)
    pagination: Optional[Pagination] = None


def _order_by(sort_by: str, sort_order: str):
    if sort_by not in SORT_FIELDS:
        sort_by = DEFAULT_SORT_FIELD
    if sort_order not in ("asc", "desc"):
        sort_order = DEFAULT_SORT_ORDER
    column = getattr(Product, sort_by)
    if sort_order == "desc":
        return column.desc(), Product.id.desc()
    return column.asc(), Product.id.asc()


class ProductService:
    """Business rules for the product catalogue."""

    def __init__(self, session: Session):
        self._session = session

    def get_products(self, request: ProductListRequest) -> ProductResponse:
        """Return a filtered, sorted page of products."""
        if request.limit <= 0:
            raise ValidationError("limit must be positive")

        stmt = _live(select(Product))
        if request.category_id > 0:
            stmt = stmt.where(Product.category_id == request.category_id)
        if request.brand_id > 0:
            stmt = stmt.where(Product.brand_id == request.brand_id)
        if request.search:
            term = f"%{request.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Product.name).like(term),
                    func.lower(Product.description).like(term),
                    func.lower(Product.tags).like(term),
                )
            )
        if request.min_price > 0:
            stmt = stmt.where(Product.price >= request.min_price)
        if request.max_price > 0:
            stmt = stmt.where(Product.price <= request.max_price)
        if request.is_active is not None:
            stmt = stmt.where(Product.is_active.is_(request.is_active))
        if request.is_featured is not None:
            stmt = stmt.where(Product.is_featured.is_(request.is_featured))

        try:
            total = self._session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        except SQLAlchemyError as exc:
            raise ServiceError(f"failed to count products: {exc}") from exc

        offset = max(0, (request.page - 1) * request.limit)
        try:
            products = self._session.scalars(
                stmt.order_by(*_order_by(request.sort_by, request.sort_order))
                .offset(offset)
                .limit(request.limit)
            ).all()
        except SQLAlchemyError as exc:
            raise ServiceError(f"failed to retrieve products: {exc}") from exc

        for product in products:
            images = sorted(
                product.images, key=lambda image: (not image.is_primary, image.sort_order, image.id)
            )
            set_committed_value(product, "images", images)

        total_pages = -(-total // request.limit)
        return ProductResponse(
            products=list(products),
            pagination=Pagination(
                page=request.page,
                limit=request.limit,
                total=total,
                total_pages=total_pages,
                has_next=request.page < total_pages,
                has_prev=request.page > 1,
            ),
        )

    def get_product(self, product_id: int) -> Product:
        """One product with its images and active variants."""
        product = self._session.scalar(_live(select(Product)).where(Product.id == product_id))
        if product is None:
            raise NotFoundError("product not found")
        return self._with_details(product)

    def get_product_by_slug(self, slug: str) -> Product:
        """One active product by slug, with its images and active variants."""
        product = self._session.scalar(
            _live(select(Product)).where(Product.slug == slug, Product.is_active.is_(True))
        )
        if product is None:
            raise NotFoundError("product not found")
        return self._with_details(product)

    def create_product(self, request: ProductCreateRequest) -> Product:
        """Create a product with a unique SKU."""
        existing = self._session.scalar(_live(select(Product.id)).where(Product.sku == request.sku))
        if existing is not None:
            raise ConflictError(f"product with SKU {request.sku} already exists")

        values = {name: getattr(request, name) for name in _UPDATABLE}
        product = Product(
            sku=request.sku, name=request.name, slug=generate_slug(request.name), **values
        )
        self._session.add(product)
        self._commit("failed to create product")
        return product

    def update_product(self, product_id: int, request: ProductUpdateRequest) -> Product:
        """Change a product; a new name also gets a new slug."""
        product = self._session.scalar(_live(select(Product)).where(Product.id == product_id))
        if product is None:
            raise NotFoundError("product not found")

        updates = {}
        if request.name is not None:
            updates["name"] = request.name
            updates["slug"] = generate_slug(request.name)
        for name in _UPDATABLE:
            value = getattr(request, name)
            if value is not None:
                updates[name] = value

        if updates:
            for name, value in updates.items():
                setattr(product, name, value)
            self._commit("failed to update product")
        return product

    def delete_product(self, product_id: int) -> None:
        """Soft-delete a product."""
        product = self._session.scalar(_live(select(Product)).where(Product.id == product_id))
        if product is None:
            raise NotFoundError("product not found")
        product.deleted_at = _utcnow()
        self._commit("failed to delete product")

    def update_inventory(self, product_id: int, quantity: int) -> None:
        """Set the stock level of a product whose quantity is tracked."""
        product = self._session.scalar(
            _live(select(Product)).where(
                Product.id == product_id, Product.track_quantity.is_(True)
            )
        )
        if product is None:
            raise NotFoundError("product not found or inventory tracking disabled")
        product.quantity = quantity
        self._commit("failed to update inventory")

    def _with_details(self, product: Product) -> Product:
        images = sorted(product.images, key=lambda image: (image.sort_order, image.id))
        variants = sorted(
            (variant for variant in product.variants if variant.is_active),
            key=lambda variant: variant.id,
        )
        set_committed_value(product, "images", images)
        set_committed_value(product, "variants", variants)
        return product

    def _commit(self, message: str) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"{message}: {exc}") from exc