"""Request and response shapes for the review service."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from storefront.models import ProductReviewImage, ValidationError

REPORT_REASONS = ("spam", "inappropriate", "fake", "other")
ADMIN_ACTIONS = ("approve", "reject")


def _require(name: str, value) -> None:
    if not value:
        raise ValidationError(f"{name} is required")


def _check_max(name: str, value, limit: int) -> None:
    if value is not None and len(value) > limit:
        raise ValidationError(f"{name} must be at most {limit} long")


def _check_rating(value: Optional[int]) -> None:
    if value is not None and not 1 <= value <= 5:
        raise ValidationError("rating must be between 1 and 5")


def _check_choice(name: str, value: str, choices) -> None:
    if value not in choices:
        raise ValidationError(f"{name} must be one of: {' '.join(choices)}")


@dataclass
class CreateReviewRequest:
    """Data for a new review."""

    product_id: int
    rating: int
    title: str
    content: str
    order_id: Optional[int] = None
    pros: str = ""
    cons: str = ""
    images: list[str] = field(default_factory=list)

    def __post_init__(self):
        _require("product_id", self.product_id)
        _require("rating", self.rating)
        _check_rating(self.rating)
        _require("title", self.title)
        _check_max("title", self.title, 255)
        _require("content", self.content)
        _check_max("content", self.content, 2000)
        _check_max("pros", self.pros, 1000)
        _check_max("cons", self.cons, 1000)
        _check_max("images", self.images, 5)


@dataclass
class UpdateReviewRequest:
    """Fields of a review to change; None leaves a field as it is."""

    rating: Optional[int] = None
    title: Optional[str] = None
    content: Optional[str] = None
    pros: Optional[str] = None
    cons: Optional[str] = None

    def __post_init__(self):
        _check_rating(self.rating)
        _check_max("title", self.title, 255)
        _check_max("content", self.content, 2000)
        _check_max("pros", self.pros, 1000)
        _check_max("cons", self.cons, 1000)


@dataclass
class ReviewListRequest:
    """Filters, sorting and paging for listing reviews."""

    product_id: Optional[int] = None
    user_id: Optional[int] = None
    rating: Optional[int] = None
    is_verified: Optional[bool] = None
    is_approved: Optional[bool] = None
    sort_by: str = ""
    sort_order: str = ""
    page: int = 0
    limit: int = 0
    search_query: str = ""

    def __post_init__(self):
        _check_rating(self.rating)


@dataclass(kw_only=True)
class ReviewUserResponse:
    """Author details shown with a review."""

    id: int
    first_name: str = ""
    last_name: str = ""
    avatar: str = ""
    is_verified: bool = False
    review_count: int = 0


@dataclass(kw_only=True)
class ReviewProductResponse:
    """Basic product details shown with a review."""

    id: int
    name: str = ""
    slug: str = ""
    image_url: str = ""


@dataclass(kw_only=True)
class ReviewResponse:
    """A review as seen by a particular (possibly anonymous) user."""

    id: int
    product_id: int
    user_id: int
    rating: int
    title: str = ""
    content: str = ""
    pros: str = ""
    cons: str = ""
    order_id: Optional[int] = None
    is_verified: bool = False
    is_approved: bool = False
    helpful_count: int = 0
    is_reported: bool = False
    images: list[ProductReviewImage] = field(default_factory=list)
    user: Optional[ReviewUserResponse] = None
    product: Optional[ReviewProductResponse] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    user_voted: Optional[bool] = None
    user_helpful: Optional[bool] = None
    can_edit: bool = False
    can_delete: bool = False


@dataclass(kw_only=True)
class ReviewSummary:
    """Aggregate statistics over a product's approved reviews."""

    total_reviews: int = 0
    average_rating: float = 0.0
    rating_breakdown: dict[str, int] = field(default_factory=dict)
    verified_count: int = 0
    recent_reviews: int = 0


@dataclass(kw_only=True)
class PaginationInfo:
    """Paging details of a list response."""

    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


@dataclass(kw_only=True)
class ReviewListResponse:
    """A page of reviews with paging details and summary."""

    reviews: list[ReviewResponse]
    pagination: PaginationInfo
    summary: ReviewSummary = field(default_factory=ReviewSummary)


@dataclass
class ReviewHelpfulRequest:
    """A helpful / not-helpful vote."""

    is_helpful: bool


@dataclass
class ReviewReportRequest:
    """A report flagging a review."""

    reason: str
    comment: str = ""

    def __post_init__(self):
        _check_choice("reason", self.reason, REPORT_REASONS)
        _check_max("comment", self.comment, 500)


@dataclass
class AdminReviewActionRequest:
    """An administrator's moderation decision."""

    action: str
    comment: str = ""

    def __post_init__(self):
        _check_choice("action", self.action, ADMIN_ACTIONS)
        _check_max("comment", self.comment, 500)