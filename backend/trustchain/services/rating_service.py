# Overview: Service-layer operations for post-delivery ratings and profile rating aggregates.

from __future__ import annotations

from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Profile, RatingReview
from ..models.states import ORDER_DELIVERED
from ..payloads import RatingSubmitted
from ..validation import AuthorizationError, StateConflict, ValidationError, parse_int
from .activity_service import append_activity
from .concurrency import run_with_retry
from .order_service import require_order
from trustchain.time_utils import utcnow


class RatingAlreadySubmitted(StateConflict):
    code = "RATING_ALREADY_SUBMITTED"


def _parse_rating(value: Any, field: str) -> int | None:
    if value is None:
        return None
    rating = parse_int(value, field)
    if not (1 <= rating <= 5):
        raise ValidationError(f"{field} must be between 1 and 5")
    return rating


def _refresh_average(column_name: str, rating_column, user_id: str) -> None:
    """
    Recompute Profile.rating from all ratings in one UPDATE.

    The average is computed by the database inside the statement, so two
    concurrent submissions cannot overwrite each other with stale values.
    """
    owner_column = getattr(RatingReview, column_name)
    average = (
        select(func.avg(rating_column))
        .where(owner_column == user_id, rating_column.isnot(None))
        .scalar_subquery()
    )
    db.session.execute(
        update(Profile)
        .where(Profile.id == user_id)
        .values(rating=func.coalesce(average, Profile.rating))
        .execution_options(synchronize_session=False)
    )


def submit_rating(
    order_id: int,
    customer_id: str,
    *,
    driver_rating: Any = None,
    merchant_rating: Any = None,
    driver_review: str | None = None,
    merchant_review: str | None = None,
) -> RatingReview:
    """
    Rate the driver and/or merchant of a delivered order. One rating per
    order per customer. Appends `rating_submitted`.
    """
    order = require_order(order_id)
    if order.customer_id != customer_id:
        raise AuthorizationError("Only the customer can rate this order")
    if order.status != ORDER_DELIVERED:
        raise StateConflict(f"Order {order_id} has not been delivered")

    driver_id = order.delivery.driver_id if order.delivery is not None else None
    merchant_id = order.merchant_id
    driver_rating = _parse_rating(driver_rating, "driver_rating") if driver_id else None
    merchant_rating = _parse_rating(merchant_rating, "merchant_rating") if merchant_id else None
    if driver_rating is None and merchant_rating is None:
        raise ValidationError("driver_rating or merchant_rating is required")

    def _op():
        review = RatingReview(
            order_id=order_id,
            customer_id=customer_id,
            driver_id=driver_id,
            merchant_id=merchant_id,
            driver_rating=driver_rating,
            merchant_rating=merchant_rating,
            driver_review=(driver_review or "").strip() or None,
            merchant_review=(merchant_review or "").strip() or None,
            created_at=utcnow(),
        )
        db.session.add(review)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise RatingAlreadySubmitted(f"Order {order_id} has already been rated")

        if driver_rating is not None:
            _refresh_average("driver_id", RatingReview.driver_rating, driver_id)
        if merchant_rating is not None:
            _refresh_average("merchant_id", RatingReview.merchant_rating, merchant_id)

        append_activity(
            action="rating_submitted",
            order_id=order_id,
            user_id=customer_id,
            details=RatingSubmitted(driver_rating=driver_rating, merchant_rating=merchant_rating),
        )
        db.session.commit()
        return review.id

    review_id = run_with_retry(_op)
    return db.session.get(RatingReview, review_id)
