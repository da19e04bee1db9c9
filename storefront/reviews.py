"""Product reviews: posting, moderation, helpful votes, reports and statistics."""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, inspect, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from storefront.models import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    Product,
    ProductImage,
    ProductReview,
    ProductReviewHelpful,
    ProductReviewImage,
    ProductReviewReport,
    ServiceError,
    ValidationError,
)
from storefront.reviews_schema import (
    AdminReviewActionRequest,
    CreateReviewRequest,
    PaginationInfo,
    ReviewHelpfulRequest,
    ReviewListRequest,
    ReviewListResponse,
    ReviewProductResponse,
    ReviewReportRequest,
    ReviewResponse,
    ReviewSummary,
    ReviewUserResponse,
    UpdateReviewRequest,
)
from storefront.users import User

SORT_FIELDS = frozenset({"created_at", "updated_at", "rating", "helpful_count"})
DEFAULT_SORT_FIELD = "created_at"
DEFAULT_SORT_ORDER = "desc"
DEFAULT_LIMIT = 20
MAX_LIMIT = 100
RECENT_DAYS = 30

_PURCHASE_SQL = text(
    """
    SELECT EXISTS(
        SELECT 1 FROM orders o
        JOIN order_items oi ON o.id = oi.order_id
        WHERE o.id = :order_id AND o.user_id = :user_id AND oi.product_id = :product_id
        AND o.status IN ('delivered', 'completed')
    )
    """
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _round2(value: float) -> float:
    """Round to two decimals, halves away from zero."""
    scaled = abs(value) * 100
    rounded = math.floor(scaled + 0.5) / 100
    return rounded if value >= 0 else -rounded


def _live(stmt):
    return stmt.where(ProductReview.deleted_at.is_(None))


class ReviewService:
    """Business rules for product reviews."""

    def __init__(self, session: Session):
        self._session = session

    def create_review(self, user_id: int, request: CreateReviewRequest) -> ReviewResponse:
        """Post a review; it waits for approval before it is public."""
        existing = self._session.scalar(
            _live(select(ProductReview.id)).where(
                ProductReview.user_id == user_id,
                ProductReview.product_id == request.product_id,
            )
        )
        if existing is not None:
            raise ConflictError("you have already reviewed this product")

        product = self._session.scalar(
            select(Product).where(
                Product.id == request.product_id,
                Product.is_active.is_(True),
                Product.deleted_at.is_(None),
            )
        )
        if product is None:
            raise NotFoundError("product not found or inactive")

        is_verified = False
        if request.order_id is not None:
            if not self._has_purchased(request.order_id, user_id, request.product_id):
                raise ValidationError(
                    "cannot review: order not found or product not purchased"
                )
            is_verified = True

        review = ProductReview(
            product_id=request.product_id,
            user_id=user_id,
            order_id=request.order_id,
            rating=request.rating,
            title=request.title.strip(),
            content=request.content.strip(),
            pros=request.pros.strip(),
            cons=request.cons.strip(),
            is_verified=is_verified,
            is_approved=False,
            helpful_count=0,
            is_reported=False,
            images=[
                ProductReviewImage(image_url=url, caption="", sort_order=position)
                for position, url in enumerate(request.images, start=1)
            ],
        )
        try:
            self._session.add(review)
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to create review: {exc}") from exc

        return self.get_review(review.id, user_id)

    def get_review(self, review_id: int, current_user_id: Optional[int] = None) -> ReviewResponse:
        """Return one review as seen by the given user (or anonymously)."""
        return self._build_response(self._find_review(review_id), current_user_id)

    def get_reviews(
        self, request: ReviewListRequest, current_user_id: Optional[int] = None
    ) -> ReviewListResponse:
        """Return a filtered, sorted page of reviews."""
        page = request.page if request.page > 0 else 1
        limit = request.limit if 0 < request.limit <= MAX_LIMIT else DEFAULT_LIMIT
        sort_by = request.sort_by or DEFAULT_SORT_FIELD
        sort_order = request.sort_order or DEFAULT_SORT_ORDER

        stmt = _live(select(ProductReview))
        if request.product_id is not None:
            stmt = stmt.where(ProductReview.product_id == request.product_id)
        if request.user_id is not None:
            stmt = stmt.where(ProductReview.user_id == request.user_id)
        if request.rating is not None:
            stmt = stmt.where(ProductReview.rating == request.rating)
        if request.is_verified is not None:
            stmt = stmt.where(ProductReview.is_verified.is_(request.is_verified))
        if request.is_approved is not None:
            stmt = stmt.where(ProductReview.is_approved.is_(request.is_approved))
        elif current_user_id is None or not self._is_admin(current_user_id):
            stmt = stmt.where(ProductReview.is_approved.is_(True))

        if request.search_query:
            term = f"%{request.search_query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(ProductReview.title).like(term),
                    func.lower(ProductReview.content).like(term),
                )
            )

        total = self._session.scalar(select(func.count()).select_from(stmt.subquery())) or 0

        if sort_by not in SORT_FIELDS:
            sort_by = DEFAULT_SORT_FIELD
        if sort_order not in ("asc", "desc"):
            sort_order = DEFAULT_SORT_ORDER
        column = getattr(ProductReview, sort_by)
        if sort_order == "desc":
            ordering = (column.desc(), ProductReview.id.desc())
        else:
            ordering = (column.asc(), ProductReview.id.asc())

        reviews = self._session.scalars(
            stmt.options(selectinload(ProductReview.images))
            .order_by(*ordering)
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

        total_pages = -(-total // limit)
        summary = (
            self._summary(request.product_id)
            if request.product_id is not None
            else ReviewSummary()
        )
        return ReviewListResponse(
            reviews=[self._build_response(review, current_user_id) for review in reviews],
            pagination=PaginationInfo(
                page=page,
                limit=limit,
                total=total,
                total_pages=total_pages,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
            summary=summary,
        )

    def update_review(
        self, review_id: int, user_id: int, request: UpdateReviewRequest
    ) -> ReviewResponse:
        """Edit one's own review; any change sends it back for approval."""
        review = self._find_review(review_id)
        if not review.can_be_edited_by(user_id):
            raise PermissionDeniedError("you cannot edit this review")

        updates = {}
        if request.rating is not None:
            updates["rating"] = request.rating
        for name in ("title", "content", "pros", "cons"):
            value = getattr(request, name)
            if value is not None:
                updates[name] = value.strip()

        if updates:
            updates["is_approved"] = False
            updates["updated_at"] = _utcnow()
            for name, value in updates.items():
                setattr(review, name, value)
            self._commit("failed to update review")

        return self.get_review(review_id, user_id)

    def delete_review(self, review_id: int, user_id: int) -> None:
        """Soft-delete a review; allowed for its author and for admins."""
        review = self._find_review(review_id)
        if not review.can_be_deleted_by(user_id) and not self._is_admin(user_id):
            raise PermissionDeniedError("you cannot delete this review")
        review.deleted_at = _utcnow()
        self._commit("failed to delete review")

    def vote_helpful(
        self, review_id: int, user_id: int, request: ReviewHelpfulRequest
    ) -> None:
        """Record or change a user's vote and refresh the helpful count."""
        review = self._find_review(review_id)
        vote = self._session.scalar(
            select(ProductReviewHelpful).where(
                ProductReviewHelpful.review_id == review_id,
                ProductReviewHelpful.user_id == user_id,
            )
        )
        try:
            if vote is None:
                self._session.add(
                    ProductReviewHelpful(
                        review_id=review_id, user_id=user_id, is_helpful=request.is_helpful
                    )
                )
            else:
                vote.is_helpful = request.is_helpful
            self._session.flush()
            review.helpful_count = self._session.scalar(
                select(func.count())
                .select_from(ProductReviewHelpful)
                .where(
                    ProductReviewHelpful.review_id == review_id,
                    ProductReviewHelpful.is_helpful.is_(True),
                )
            ) or 0
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"failed to record vote: {exc}") from exc

    def report_review(
        self, review_id: int, user_id: int, request: ReviewReportRequest
    ) -> None:
        """Flag a review; each user may report a review once."""
        review = self._find_review(review_id)
        existing = self._session.scalar(
            select(ProductReviewReport.id).where(
                ProductReviewReport.review_id == review_id,
                ProductReviewReport.user_id == user_id,
            )
        )
        if existing is not None:
            raise ConflictError("you have already reported this review")

        self._session.add(
            ProductReviewReport(
                review_id=review_id,
                user_id=user_id,
                reason=request.reason,
                comment=request.comment,
                status="pending",
            )
        )
        review.is_reported = True
        self._commit("failed to create report")

    def get_product_review_summary(self, product_id: int) -> ReviewSummary:
        """Statistics over a product's approved reviews."""
        return self._summary(product_id)

    def admin_approve_review(self, review_id: int, action: AdminReviewActionRequest) -> None:
        """Approve or reject a review."""
        review = self._find_review(review_id)
        review.is_approved = action.action == "approve"
        self._commit("failed to update review status")

    def _commit(self, message: str) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise ServiceError(f"{message}: {exc}") from exc

    def _find_review(self, review_id: int) -> ProductReview:
        review = self._session.get(ProductReview, review_id)
        if review is None or review.deleted_at is not None:
            raise NotFoundError("review not found")
        return review

    def _has_purchased(self, order_id: int, user_id: int, product_id: int) -> bool:
        inspector = inspect(self._session.connection())
        if not (inspector.has_table("orders") and inspector.has_table("order_items")):
            return False
        try:
            found = self._session.scalar(
                _PURCHASE_SQL,
                {"order_id": order_id, "user_id": user_id, "product_id": product_id},
            )
        except SQLAlchemyError:
            return False
        return bool(found)

    def _is_admin(self, user_id: int) -> bool:
        user = self._session.get(User, user_id)
        return user is not None and user.deleted_at is None and bool(user.is_admin)

    def _build_response(
        self, review: ProductReview, current_user_id: Optional[int]
    ) -> ReviewResponse:
        response = ReviewResponse(
            id=review.id,
            product_id=review.product_id,
            user_id=review.user_id,
            order_id=review.order_id,
            rating=review.rating,
            title=review.title,
            content=review.content,
            pros=review.pros,
            cons=review.cons,
            is_verified=review.is_verified,
            is_approved=review.is_approved,
            helpful_count=review.helpful_count,
            is_reported=review.is_reported,
            images=sorted(review.images, key=lambda image: image.id),
            created_at=review.created_at,
            updated_at=review.updated_at,
            user=self._review_user(review.user_id),
            product=self._review_product(review.product_id),
        )

        if current_user_id is not None:
            response.can_edit = review.can_be_edited_by(current_user_id)
            response.can_delete = review.can_be_deleted_by(
                current_user_id
            ) or self._is_admin(current_user_id)
            vote = self._session.scalar(
                select(ProductReviewHelpful).where(
                    ProductReviewHelpful.review_id == review.id,
                    ProductReviewHelpful.user_id == current_user_id,
                )
            )
            if vote is not None:
                response.user_voted = vote.is_helpful
                response.user_helpful = vote.is_helpful
        return response

    def _review_user(self, user_id: int) -> ReviewUserResponse:
        user = self._session.get(User, user_id)
        review_count = self._session.scalar(
            _live(select(func.count()).select_from(ProductReview)).where(
                ProductReview.user_id == user_id,
                ProductReview.is_approved.is_(True),
            )
        ) or 0
        if user is None:
            return ReviewUserResponse(id=0, is_verified=True, review_count=review_count)
        return ReviewUserResponse(
            id=user.id,
            first_name=user.first_name or "",
            last_name=user.last_name or "",
            avatar=user.avatar or "",
            is_verified=True,
            review_count=review_count,
        )

    def _review_product(self, product_id: int) -> ReviewProductResponse:
        product = self._session.get(Product, product_id)
        image_url = self._session.scalar(
            select(ProductImage.url)
            .where(ProductImage.product_id == product_id)
            .order_by(ProductImage.sort_order.asc(), ProductImage.id.asc())
            .limit(1)
        )
        if product is None:
            return ReviewProductResponse(id=0, image_url=image_url or "")
        return ReviewProductResponse(
            id=product.id,
            name=product.name,
            slug=product.slug,
            image_url=image_url or "",
        )

    def _summary(self, product_id: int) -> ReviewSummary:
        approved = _live(select(ProductReview)).where(
            ProductReview.product_id == product_id,
            ProductReview.is_approved.is_(True),
        ).subquery()

        total = self._session.scalar(select(func.count()).select_from(approved)) or 0
        verified = self._session.scalar(
            select(func.count()).select_from(approved).where(approved.c.is_verified.is_(True))
        ) or 0
        average = self._session.scalar(select(func.avg(approved.c.rating))) or 0.0

        counts = dict(
            self._session.execute(
                select(approved.c.rating, func.count()).group_by(approved.c.rating)
            ).all()
        )
        breakdown = {str(rating): int(counts.get(rating, 0)) for rating in range(1, 6)}

        recent = self._session.scalar(
            select(func.count())
            .select_from(approved)
            .where(approved.c.created_at >= _utcnow() - timedelta(days=RECENT_DAYS))
        ) or 0

        return ReviewSummary(
            total_reviews=total,
            average_rating=_round2(float(average)),
            rating_breakdown=breakdown,
            verified_count=verified,
            recent_reviews=recent,
        )