import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import storefront.users  # noqa: F401  (registers the users table)
from storefront.models import (
    Base,
    Category,
    ConflictError,
    NotFoundError,
    ProductVariant,
    ValidationError,
)
from storefront.products import (
    ProductCreateRequest,
    ProductListRequest,
    ProductService,
    ProductUpdateRequest,
)


@pytest.fixture
def session():
    engine = create_engine("sqlite://")
    Base.metadata.create_all(engine)
    with Session(engine) as db:
        yield db


@pytest.fixture
def category(session):
    cat = Category(name="Clothing", slug="clothing", is_active=True)
    session.add(cat)
    session.commit()
    return cat


@pytest.fixture
def service(session):
    return ProductService(session)


def make(service, category, sku, name, price, **extra):
    extra.setdefault("is_active", True)
    extra.setdefault("track_quantity", True)
    return service.create_product(
        ProductCreateRequest(sku=sku, name=name, price=price, category_id=category.id, **extra)
    )


def test_create_and_get(service, category):
    created = make(service, category, "SKU-1", "Red Shirt", 1999)
    fetched = service.get_product(created.id)
    assert fetched.sku == "SKU-1"
    assert fetched.price == 1999
    assert fetched.slug.startswith("red-shirt-")


def test_create_requires_fields(category):
    with pytest.raises(ValidationError):
        ProductCreateRequest(sku="", name="x", price=1, category_id=category.id)
    with pytest.raises(ValidationError):
        ProductCreateRequest(sku="a", name="x", price=0, category_id=category.id)


def test_duplicate_sku(service, category):
    make(service, category, "DUP", "One", 100)
    with pytest.raises(ConflictError, match="DUP"):
        make(service, category, "DUP", "Two", 200)


def test_get_missing(service):
    with pytest.raises(NotFoundError):
        service.get_product(123)


def test_get_by_slug_only_active(service, category):
    hidden = make(service, category, "H", "Hidden", 100, is_active=False)
    with pytest.raises(NotFoundError):
        service.get_product_by_slug(hidden.slug)
    shown = make(service, category, "S", "Shown", 100)
    assert service.get_product_by_slug(shown.slug).id == shown.id


def test_get_product_lists_active_variants_only(service, session, category):
    product = make(service, category, "V", "Varied", 500)
    active = ProductVariant(product_id=product.id, sku="V-1", name="Small", is_active=True)
    inactive = ProductVariant(product_id=product.id, sku="V-2", name="Large", is_active=False)
    session.add_all([active, inactive])
    session.commit()
    session.expire_all()
    fetched = service.get_product(product.id)
    assert [variant.sku for variant in fetched.variants] == ["V-1"]


def test_search_matches_tags_case_insensitively(service, category):
    make(service, category, "A", "Red Shirt", 100)
    jeans = make(service, category, "B", "Blue Jeans", 200, tags="denim,casual")
    result = service.get_products(ProductListRequest(search="DENIM"))
    assert [p.id for p in result.products] == [jeans.id]


def test_price_range(service, category):
    make(service, category, "A", "Cheap", 100)
    mid = make(service, category, "B", "Mid", 500)
    make(service, category, "C", "Dear", 900)
    result = service.get_products(ProductListRequest(min_price=200, max_price=600))
    assert [p.id for p in result.products] == [mid.id]


def test_sort_by_price_ascending(service, category):
    make(service, category, "A", "a", 300)
    make(service, category, "B", "b", 100)
    make(service, category, "C", "c", 200)
    result = service.get_products(ProductListRequest(sort_by="price", sort_order="asc"))
    assert [p.price for p in result.products] == [100, 200, 300]


def test_unknown_sort_falls_back_to_default(service, category):
    for index in range(3):
        make(service, category, f"S{index}", f"n{index}", 100 + index)
    default = service.get_products(ProductListRequest())
    bogus = service.get_products(ProductListRequest(sort_by="bogus", sort_order="sideways"))
    assert [p.id for p in bogus.products] == [p.id for p in default.products]


def test_pagination_invariants(service, category):
    for index in range(3):
        make(service, category, f"P{index}", f"item {index}", 100)
    first = service.get_products(ProductListRequest(page=1, limit=2))
    second = service.get_products(ProductListRequest(page=2, limit=2))
    assert first.pagination.total == 3
    assert first.pagination.has_next and not first.pagination.has_prev
    assert second.pagination.has_prev and not second.pagination.has_next
    ids = [p.id for p in first.products] + [p.id for p in second.products]
    assert len(set(ids)) == first.pagination.total


def test_filter_active(service, category):
    active = make(service, category, "A", "on", 100)
    make(service, category, "B", "off", 100, is_active=False)
    result = service.get_products(ProductListRequest(is_active=True))
    assert [p.id for p in result.products] == [active.id]


def test_invalid_limit(service):
    with pytest.raises(ValidationError):
        service.get_products(ProductListRequest(limit=0))


def test_update(service, category):
    product = make(service, category, "U", "Old Name", 100)
    updated = service.update_product(product.id, ProductUpdateRequest(name="New Name", price=250))
    assert updated.name == "New Name"
    assert updated.price == 250
    assert updated.slug.startswith("new-name-")
    assert updated.sku == "U"


def test_update_missing(service):
    with pytest.raises(NotFoundError):
        service.update_product(9, ProductUpdateRequest(price=1))


def test_delete(service, category):
    product = make(service, category, "D", "Doomed", 100)
    service.delete_product(product.id)
    with pytest.raises(NotFoundError):
        service.get_product(product.id)
    with pytest.raises(NotFoundError):
        service.delete_product(product.id)
    assert service.get_products(ProductListRequest()).pagination.total == 0


def test_update_inventory(service, category):
    product = make(service, category, "I", "Stocked", 100)
    service.update_inventory(product.id, 42)
    assert service.get_product(product.id).quantity == 42


def test_update_inventory_untracked(service, category):
    product = make(service, category, "N", "Untracked", 100, track_quantity=False)
    with pytest.raises(NotFoundError, match="inventory tracking disabled"):
        service.update_inventory(product.id, 5)