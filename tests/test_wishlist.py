from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

import storefront.users  # noqa: F401
from storefront.models import (
    Base,
    ConflictError,
    NotFoundError,
    Product,
    ProductVariant,
    ValidationError,
    WishlistItem,
)
from storefront.wishlist import AddToWishlistRequest, WishlistService, WishlistSummary


@pytest.fixture
def session():
    engine = create_engine("sqlite://")
    Base.metadata.create_all(engine)
    with Session(engine) as db:
        yield db
    engine.dispose()


@pytest.fixture
def service(session):
    return WishlistService(session)


def make_product(session, sku, price=1000, is_active=True):
    product = Product(
        sku=sku, name=f"Item {sku}", slug=f"item-{sku}", price=price,
        category_id=1, is_active=is_active,
    )
    session.add(product)
    session.commit()
    return product


def make_variant(session, product, sku, price=0, is_active=True):
    variant = ProductVariant(
        product_id=product.id, sku=sku, name=f"Variant {sku}", price=price, is_active=is_active
    )
    session.add(variant)
    session.commit()
    return variant


def test_add_returns_available_item_with_price(session, service):
    product = make_product(session, "a", price=1250)
    item = service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    assert item.product_id == product.id
    assert item.is_available is True
    assert item.current_price == 1250
    assert item.original_price == item.current_price
    assert item.price_changed is False


def test_variant_price_overrides_product_price(session, service):
    product = make_product(session, "a", price=1000)
    variant = make_variant(session, product, "a-red", price=1500)
    item = service.add_to_wishlist(
        1, AddToWishlistRequest(product_id=product.id, product_variant_id=variant.id)
    )
    assert item.current_price == 1500
    assert item.product_variant.id == variant.id


def test_zero_variant_price_keeps_product_price(session, service):
    product = make_product(session, "a", price=1000)
    variant = make_variant(session, product, "a-blue", price=0)
    item = service.add_to_wishlist(
        1, AddToWishlistRequest(product_id=product.id, product_variant_id=variant.id)
    )
    assert item.current_price == 1000


def test_add_duplicate_raises_conflict(session, service):
    product = make_product(session, "a")
    service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    with pytest.raises(ConflictError, match="item already exists in wishlist"):
        service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))


def test_add_inactive_product_not_found(session, service):
    product = make_product(session, "a", is_active=False)
    with pytest.raises(NotFoundError, match="product not found or inactive"):
        service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))


def test_add_variant_of_other_product_not_found(session, service):
    first = make_product(session, "a")
    second = make_product(session, "b")
    variant = make_variant(session, second, "b-red")
    with pytest.raises(NotFoundError, match="product variant not found or inactive"):
        service.add_to_wishlist(
            1, AddToWishlistRequest(product_id=first.id, product_variant_id=variant.id)
        )


def test_remove_item(session, service):
    product = make_product(session, "a")
    service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    assert service.is_in_wishlist(1, product.id) is True
    service.remove_from_wishlist(1, product.id)
    assert service.is_in_wishlist(1, product.id) is False
    with pytest.raises(NotFoundError, match="item not found in wishlist"):
        service.remove_from_wishlist(1, product.id)


def test_is_in_wishlist_distinguishes_variants(session, service):
    product = make_product(session, "a")
    variant = make_variant(session, product, "a-red")
    service.add_to_wishlist(
        1, AddToWishlistRequest(product_id=product.id, product_variant_id=variant.id)
    )
    assert service.is_in_wishlist(1, product.id, variant.id) is True
    assert service.is_in_wishlist(1, product.id) is False


def test_count_and_clear(session, service):
    for sku in ("a", "b"):
        product = make_product(session, sku)
        service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    other = make_product(session, "c")
    service.add_to_wishlist(2, AddToWishlistRequest(product_id=other.id))
    assert service.get_wishlist_count(1) == 2
    service.clear_wishlist(1)
    assert service.get_wishlist_count(1) == 0
    assert service.get_wishlist_count(2) == 1


def test_pagination(session, service):
    for sku in ("a", "b", "c"):
        product = make_product(session, sku)
        service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    first = service.get_wishlist(1, 1, 2)
    second = service.get_wishlist(1, 2, 2)
    assert first.count == 2
    assert first.pagination.total == 3
    assert first.pagination.total_pages == 2
    assert first.pagination.has_next is True
    assert first.pagination.has_prev is False
    assert second.count == 1
    assert second.pagination.has_next is False
    assert second.pagination.has_prev is True
    ids = {item.id for item in first.items} | {item.id for item in second.items}
    assert len(ids) == 3


def test_sort_by_product_id_ascending(session, service):
    products = [make_product(session, sku) for sku in ("a", "b", "c")]
    for product in reversed(products):
        service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    result = service.get_wishlist(1, 1, 10, "product_id", "asc")
    product_ids = [item.product_id for item in result.items]
    assert product_ids == sorted(product_ids)


def test_non_positive_limit_rejected(service):
    with pytest.raises(ValidationError):
        service.get_wishlist(1, 1, 0)


def test_deactivated_product_unavailable(session, service):
    product = make_product(session, "a", price=1000)
    kept = make_product(session, "b", price=3000)
    service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    service.add_to_wishlist(1, AddToWishlistRequest(product_id=kept.id))
    product.is_active = False
    session.commit()
    summary = service.get_wishlist_summary(1)
    assert summary.total_items == 2
    assert summary.available_items == 1
    assert summary.unavailable_items == 1
    assert summary.total_value == kept.price


def test_summary_values(session, service):
    for sku, price in (("a", 1000), ("b", 3000)):
        product = make_product(session, sku, price=price)
        service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    summary = service.get_wishlist_summary(1)
    assert summary.total_value == 1000 + 3000
    assert summary.average_price == pytest.approx(20.0)
    assert summary.recently_added == 2


def test_old_items_not_recent(session, service):
    product = make_product(session, "a")
    service.add_to_wishlist(1, AddToWishlistRequest(product_id=product.id))
    item = session.scalar(select(WishlistItem).where(WishlistItem.product_id == product.id))
    item.added_at = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=10)
    session.commit()
    assert service.get_wishlist_summary(1).recently_added == 0


def test_empty_summary(service):
    assert service.get_wishlist_summary(1) == WishlistSummary()


def test_bulk_add(session, service):
    existing = make_product(session, "a")
    fresh = make_product(session, "b")
    service.add_to_wishlist(1, AddToWishlistRequest(product_id=existing.id))
    missing_id = fresh.id + 100
    result = service.bulk_add_to_wishlist(1, [existing.id, fresh.id, missing_id])
    assert result.added == [fresh.id]
    assert result.skipped == [existing.id]
    assert result.failed == [missing_id]
    assert result.messages[0] == f"Product {existing.id} already in wishlist"
    assert result.messages[1] == (
        f"Product {missing_id} failed: product not found or inactive"
    )