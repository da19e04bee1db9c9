# storefront

Domain services for an online store, built on SQLAlchemy 2. The package holds
the models and business rules for a product catalogue (products, categories,
brands, variants and images), product reviews, file uploads, users and their
addresses, and wishlists. Each service takes a SQLAlchemy `Session` in its
constructor. You call its methods and it commits its own changes.

## Installation

```
pip install .
```

With the test dependencies:

```
pip install .[test]
```

## Modules

| Module | Contents |
| --- | --- |
| `storefront.models` | Declarative `Base`; `Product`, `Category`, `Brand`, `ProductImage`, `ProductVariant`, `ProductReview`, `ProductReviewImage`, `ProductReviewHelpful`, `ProductReviewReport`, `UploadedFile`, `FileUsage`, `WishlistItem`; the error classes; `format_file_size` |
| `storefront.users` | The `User` and `Address` models |
| `storefront.reviews_schema` | Request and response dataclasses for reviews, which validate their input |
| `storefront.reviews` | `ReviewService` |
| `storefront.categories` | `CategoryService`, its request and tree types, and `generate_slug` |
| `storefront.products` | `ProductService` and its request and response types |
| `storefront.uploads` | `UploadService`, `UploadSettings` and the upload request and result types |
| `storefront.addresses` | `AddressService` and its request types |
| `storefront.admin` | `AdminService` for listing, moderating and exporting users |
| `storefront.wishlist` | `WishlistService` and its response types |

The `users` and `addresses` tables are registered on `Base.metadata` when
`storefront.users` is imported. Import it, or a module that imports it such as
`storefront.reviews` or `storefront.admin`, before you call
`Base.metadata.create_all`.

## Getting started

```python
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import storefront.users  # registers the users and addresses tables
from storefront.models import Base
from storefront.categories import CategoryService, CategoryCreateRequest
from storefront.products import ProductService, ProductCreateRequest

engine = create_engine("sqlite://")
Base.metadata.create_all(engine)

with Session(engine) as session:
    shoes = CategoryService(session).create_category(
        CategoryCreateRequest(name="Shoes", is_active=True)
    )

    sneaker = ProductService(session).create_product(
        ProductCreateRequest(
            sku="SNK-001",
            name="Running Sneaker",
            price=7999,
            compare_price=9999,
            category_id=shoes.id,
            is_active=True,
            track_quantity=True,
            quantity=3,
            low_stock_threshold=5,
        )
    )

    print(sneaker.formatted_price)      # 79.99
    print(sneaker.discount_percentage)  # 20
    print(sneaker.is_low_stock())       # True
    print(sneaker.slug)                 # running-sneaker-<unix timestamp>
```

Prices are whole cents. `formatted_price` is a property that gives the amount
in currency units. `discount_percentage` is a property that gives the whole
percent saved against `compare_price`.

Slugs come from `generate_slug(name, timestamp=None)`. It lower-cases the
name, turns spaces and underscores into hyphens, and appends the Unix time.

## What the services do

- **Products** (`ProductService`): paged listing with category, brand, price,
  text, active and featured filters and a choice of sort field. Lookup by id
  or by slug, which includes images and active variants only. Creation with a
  unique SKU, partial updates, soft deletion, and `update_inventory` for
  products whose stock is tracked.
- **Categories** (`CategoryService`): flat lists, a tree built from parent
  links (`CategoryTree`), root categories and subcategories, and product
  counts per category. Updates refuse a parent that would create a cycle.
  Deletion is soft and is refused while a category still has products or
  subcategories.
- **Reviews** (`ReviewService`): one review per user per product. A new review
  waits for admin approval, and so does an edited one. An author may edit
  within 30 days and may delete at any time; admins may delete any review.
  The service also handles helpful votes, one report per user per review,
  approval or rejection by an admin, and a per-product summary with the
  average rating, a breakdown by star and the number of reviews in the last
  30 days.
- **Uploads** (`UploadService`): see below.
- **Addresses** (`AddressService`): shipping and billing addresses, with one
  default per type. A new default replaces the previous one. Country codes must
  be in a fixed list of ISO 3166-1 alpha-2 codes (`IN`, `US`, `GB`, `CA`,
  `AU`, `DE`, `FR`, `JP`, `SG`, `AE`). `validate_address` checks that an
  address is complete.
- **Users** (`AdminService`): paged, filtered and sorted user lists, each user
  with address and order statistics. Password hashes are blanked in the
  results. The service turns accounts on and off and grants or revokes admin
  rights. It does not let admins deactivate themselves or drop their own
  rights, and it keeps at least one admin. `export_users` returns
  `(data, filename)` as CSV or JSON.
- **Wishlists** (`WishlistService`): add active products or variants, remove
  entries, clear the list, count entries and check membership. Bulk adding
  reports which products were added, skipped or failed. Paged views show
  availability and the current price, and the summary gives the total value,
  the average price and the number of items added in the last 7 days.

Products, categories, reviews, uploaded files, wishlist items and users are
soft-deleted: `deleted_at` is set and the services ignore such rows from then
on. Addresses are removed outright.

## Errors

A failed operation raises an exception. It does not return a status value.

| Exception (in `storefront.models`) | Raised when |
| --- | --- |
| `ServiceError` | Base class of the errors below. It is also raised on its own when a database write fails |
| `NotFoundError` | A record does not exist, for example "product not found" |
| `ConflictError` | The operation clashes with existing data, for example a second review of a product by the same user, an SKU that is already taken, or deleting a category that still has products |
| `ValidationError` | The input is rejected, for example an unknown country code, a circular category parent, a rating outside 1–5, or a file type that is not allowed |
| `PermissionDeniedError` | The acting user may not do this, for example edit someone else's review or remove their own admin rights |

## Uploads

`UploadService(session, settings)` writes files under
`UploadSettings.local_path`, in a subdirectory named after the category
(`general` if no category is given). The stored filename gets an 8-character
random suffix. URLs are built on `UploadSettings.cdn_base_url`, or on
`/uploads` if that is empty. The service checks each file against
`max_size` (10 MiB by default) and `allowed_extensions`.

For JPEG and PNG images the service reads the width and height with Pillow.
For an image with an image extension it also stores a `_thumb` file. The
thumbnail is a copy of the original and is not resized. `optimize_image`
re-encodes a JPEG at the requested quality, or re-saves a PNG, as a separate
file. The requested width and height only appear in that file's name. The
image is not scaled.

`delete_image` refuses a file that has `FileUsage` records unless you pass
`force=True`. `get_upload_stats` returns totals, counts per category,
per-month counts and sizes for the last twelve months, and the ten most recent
uploads.

## What the package does not do

- It has no web API, server or command-line program. It is a library of
  services to call from your own code.
- It keeps no carts or orders and has no tables for them. A review that gives
  an `order_id` is accepted only if the database also has `orders` and
  `order_items` tables that show a delivered or completed purchase. Otherwise
  the review is refused. User order statistics stay at zero unless an `orders`
  table exists.
- Uploaded files are stored on local disk only.

## Running the tests

```
pytest
```