"""Online-store domain services on SQLAlchemy: catalogue, categories, reviews, uploads, users, addresses and wishlists."""

__version__ = "0.1.0"

__all__ = [
    "addresses",
    "admin",
    "categories",
    "models",
    "products",
    "reviews",
    "reviews_schema",
    "uploads",
    "users",
    "wishlist",
]