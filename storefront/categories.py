"""Product categories: listing, hierarchy, creation, editing and removal."""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from storefront.models import (
    Category,
    ConflictError,
    NotFoundError,
    Product,
    ServiceError,
    ValidationError,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_slug(name: str, timestamp: Optional[int] = None) -> str:
    """URL-friendly slug from a name, suffixed with a Unix timestamp."""
    if timestamp is None:
        timestamp = int(time.time())
    slug = name.lower().replace(" ", "-").replace("_", "-")
    return f"{slug}-{int(timestamp)}"


def _ordering():
    return (Category.sort_order.asc(), Category.name.asc(), Category.id.asc())


def _live(stmt):
    return stmt.where(Category.deleted_at.is_(None))


@dataclass
class CategoryCreateRequest:
    """Data for a new category."""

    name: str
    description: str = ""
    image: str = ""
    parent_id: Optional[int] = None
    sort_order: int = 0
    is_active: bool = False

    def __post_init__(self):
        if not self.name:
            raise ValidationError("name is required")


@dataclass
class CategoryUpdateRequest:
    """Fields of a category to change; None leaves a field as it is."""

    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    parent_id: Optional[int] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


@dataclass
class CategoryWithProductCount:
    """A category with the number of products filed under it."""

    category: Category
    product_count: int = 0


@dataclass
class CategoryTree:
    """A category with its subcategories nested below it."""

    category: Category
    children: list["CategoryTree"] = field(default_factory=list)


class CategoryService:
    """Business rules for product categories."""

    def __init__(self, session: Session):
        self._session = session

    def get_categories(self, include_inactive: bool = False) -> list[Category]:
        """All categories, ordered by sort order then name."""
        stmt = _live(select(Category))
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self._session.scalars(stmt.order_by(*_ordering())).all())

    def get_category_tree(self, include_inactive: bool = False) -> list[CategoryTree]:
        """Categories arranged as a forest of root categories."""
        categories = self.get_categories(include_inactive)
        nodes = {category.id: CategoryTree(category) for category in categories}
        roots = []
        for category in categories:
            node = nodes[category.id]
            if category.parent_id is None:
                roots.append(node)
            elif category.parent_id in nodes:
                nodes[category.parent_id].children.append(node)
        return roots

    def get_categories_with_product_count(
        self, include_inactive: bool = False
    ) -> list[CategoryWithProductCount]:
        """Categories with product counts; only active products unless inactive are included."""
        result = []
        for category in self.get_categories(include_inactive):
            count_stmt = (
                select(func.count())
                .select_from(Product)
                .where(Product.category_id == category.id, Product.deleted_at.is_(None))
            )
            if not include_inactive:
                count_stmt = count_stmt.where(Product.is_active.is_(True))
            count = self._session.scalar(count_stmt) or 0
            result.append(CategoryWithProductCount(category, count))
        return result

    def get_category(self, category_id: int) -> Category:
        """One category with its active children."""
        category = self._session.scalar(_live(select(Category)).where(Category.id == category_id))
        if category is None:
            raise NotFoundError("category not found")
        return self._with_active_children(category)

    def get_category_by_slug(self, slug: str) -> Category:
        """One active category by slug, with its active children."""
        category = self._session.scalar(
            _live(select(Category)).where(Category.slug == slug, Category.is_active.is_(True))
        )
        if category is None:
            raise NotFoundError("category not found")
        return self._with_active_children(category)

    def create_category(self, request: CategoryCreateRequest) -> Category:
        """Create a category under an optional existing parent."""
        if request.parent_id is not None and self._find(request.parent_id) is None:
            raise NotFoundError("parent category not found")

        slug = generate_slug(request.name)
        existing = self._session.scalar(_live(select(Category.id)).where(Category.slug == slug))
        if existing is not None:
            raise ConflictError("category with similar name already exists")

        category = Category(
            name=request.name,
            slug=slug,
            description=request.description,
            image=request.image,
            parent_id=request.parent_id,
            sort_order=request.sort_order,
            is_active=request.is_active,
        )
        self._session.add(category)
        self._commit("failed to create category")
        return category

    def update_category(self, category_id: int, request: CategoryUpdateRequest) -> Category:
        """Change a category, refusing parent links that would form a cycle."""
        category = self._find(category_id)
        if category is None:
            raise NotFoundError("category not found")

        if request.parent_id is not None:
            if request.parent_id == category_id:
                raise ValidationError("category cannot be its own parent")
            if self._find(request.parent_id) is None:
                raise NotFoundError("parent category not found")
            if category_id in self._ancestors(request.parent_id):
                raise ValidationError("circular reference detected")

        updates = {}
        if request.name is not None:
            updates["name"] = request.name
            updates["slug"] = generate_slug(request.name)
        for name in ("description", "image", "parent_id", "sort_order", "is_active"):
            value = getattr(request, name)
            if value is not None:
                updates[name] = value

        if updates:
            for name, value in updates.items():
                setattr(category, name, value)
            self._commit("failed to update category")
        return category

    def delete_category(self, category_id: int) -> None:
        """Soft-delete a category that has no products and no subcategories."""
        products = self._session.scalar(
            select(func.count())
            .select_from(Product)
            .where(Product.category_id == category_id, Product.deleted_at.is_(None))
        )
        if products:
            raise ConflictError("cannot delete category with existing products")

        children = self._session.scalar(
            _live(select(func.count()).select_from(Category)).where(
                Category.parent_id == category_id
            )
        )
        if children:
            raise ConflictError("cannot delete category with subcategories")

        category = self._find(category_id)
        if category is None:
            raise NotFoundError("category not found")
        category.deleted_at = _utcnow()
        self._commit("failed to delete category")

    def get_root_categories(self, include_inactive: bool = False) -> list[Category]:
        """Categories that have no parent."""
        stmt = _live(select(Category)).where(Category.parent_id.is_(None))
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self._session.scalars(stmt.order_by(*_ordering())).all())

    def get_subcategories(self, parent_id: int, include_inactive: bool = False) -> list[Category]:
        """Direct children of a category."""
        stmt = _live(select(Category)).where(Category.parent_id == parent_id)
        if not include_inactive:
            stmt = stmt.where(Category.is_active.is_(True))
        return list(self._session.scalars(stmt.order_by(*_ordering())).all())

    def _find(self, category_id: int) -> Optional[Category]:
        return self._session.scalar(_live(select(Category)).where(Category.id == category_id))

    def _with_active_children(self, category: Category) -> Category:
        children = self._session.scalars(
            _live(select(Category))
            .where(Category.parent_id == category.id, Category.is_active.is_(True))
            .order_by(*_ordering())
        ).all()
        set_committed_value(category, "children", list(children))
        return category

    def _ancestors(self, category_id: int) -> list[int]:
        ancestors: list[int] = []
        current = category_id
        while True:
            parent_id = self._session.scalar(
                _live(select(Category.parent_id)).where(Category.id == current)
            )
            if parent_id is None or parent_id in ancestors:
                return ancestors
            ancestors.append(parent_id)
            current = parent_id

    def _commit(self, message: str) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"{message}: {exc}") from exc