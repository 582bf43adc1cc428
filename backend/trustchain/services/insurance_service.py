# Overview: Service-layer operations for shipment insurance policies.

"""
Shipment insurance is independent of the order state machine.

    active -> claimed | expired | cancelled

premium = coverage * premium_pct / 100, rounded half-up to the cent.
Coverage defaults to the order amount. One active policy per order, held by
the uq_insurance_policies_active_order partial index.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import InsurancePolicy
from ..models.states import (
    ORDER_CANCELLED,
    POLICY_ACTIVE,
    POLICY_CANCELLED,
    POLICY_CLAIMED,
    POLICY_EXPIRED,
    ROLE_ADMIN,
)
from ..payloads import InsuranceEvent
from ..validation import (
    AuthorizationError,
    NotFoundError,
    StateConflict,
    ValidationError,
    format_cents,
    parse_amount_cents,
    parse_decimal,
    parse_int,
)
from . import identifier_service, profile_service
from .activity_service import append_activity
from .concurrency import compare_and_set, run_with_retry, violates_constraint
from .order_service import require_order
from trustchain.time_utils import utcnow

DEFAULT_PROVIDER = "TrustChain Insurance"
MAX_DURATION_DAYS = 365
POLICY_NUMBER_ATTEMPTS = 5
ACTIVE_POLICY_CONSTRAINT = ("uq_insurance_policies_active_order", "insurance_policies.order_id")
POLICY_NUMBER_CONSTRAINT = ("insurance_policies.policy_number", "insurance_policies_policy_number_key")


class PolicyStateConflict(StateConflict):
    code = "POLICY_STATE_CONFLICT"


def compute_premium_cents(coverage_cents: int, premium_pct: Decimal) -> int:
    premium = (Decimal(coverage_cents) * premium_pct / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(premium)


def _event(policy: InsurancePolicy) -> InsuranceEvent:
    return InsuranceEvent(
        policy_number=policy.policy_number,
        status=policy.status,
        coverage=format_cents(policy.coverage_cents),
        premium=format_cents(policy.premium_cents),
    )


def _require_policy(policy_id: int) -> InsurancePolicy:
    policy = db.session.get(InsurancePolicy, policy_id)
    if policy is None:
        raise NotFoundError(f"Insurance policy {policy_id} not found")
    return policy


def _require_policy_owner(policy: InsurancePolicy, actor_id: str):
    actor = profile_service.require_profile(actor_id)
    order = require_order(policy.order_id)
    if actor.role != ROLE_ADMIN and actor.id != order.customer_id:
        raise AuthorizationError("Only the customer or an admin can manage this policy")
    return actor


def purchase_policy(
    order_id: int,
    actor_id: str,
    *,
    coverage: Any = None,
    premium_pct: Any = None,
    duration_days: Any = None,
    provider: str | None = None,
) -> InsurancePolicy:
    actor = profile_service.require_profile(actor_id)
    order = require_order(order_id)
    if actor.role != ROLE_ADMIN and actor.id != order.customer_id:
        raise AuthorizationError("Only the customer or an admin can insure this order")
    if order.status == ORDER_CANCELLED:
        raise PolicyStateConflict(f"Order {order_id} is cancelled")

    coverage_cents = order.amount_cents if coverage is None else parse_amount_cents(coverage, "coverage_amount")
    if premium_pct is None:
        premium_pct = current_app.config.get("INSURANCE_DEFAULT_PREMIUM_PCT", "5")
    pct = parse_decimal(premium_pct, "premium_percentage")
    if pct <= 0 or pct > 100:
        raise ValidationError("premium_percentage must be between 0 and 100")
    if duration_days is None:
        duration_days = current_app.config.get("INSURANCE_DEFAULT_DURATION_DAYS", 30)
    days = parse_int(duration_days, "duration_days")
    if not (1 <= days <= MAX_DURATION_DAYS):
        raise ValidationError(f"duration_days must be between 1 and {MAX_DURATION_DAYS}")
    provider = (provider or DEFAULT_PROVIDER).strip()[:64] or DEFAULT_PROVIDER
    premium_cents = compute_premium_cents(coverage_cents, pct)

    for _ in range(POLICY_NUMBER_ATTEMPTS):
        def _op():
            # Serialises purchases on PostgreSQL; the partial unique index
            # is what holds on SQLite.
            require_order(order_id, for_update=True)
            existing = (
                db.session.query(InsurancePolicy.id)
                .filter(InsurancePolicy.order_id == order_id, InsurancePolicy.status == POLICY_ACTIVE)
                .first()
            )
            if existing is not None:
                raise PolicyStateConflict(f"Order {order_id} already has an active policy")

            now = utcnow()
            policy = InsurancePolicy(
                order_id=order_id,
                provider=provider,
                policy_number=identifier_service.generate_policy_number(now),
                coverage_cents=coverage_cents,
                premium_cents=premium_cents,
                status=POLICY_ACTIVE,
                expires_at=now + timedelta(days=days),
                created_at=now,
                updated_at=now,
            )
            db.session.add(policy)
            db.session.flush()
            append_activity(
                action="insurance_purchased",
                order_id=order_id,
                user_id=actor.id,
                details=_event(policy),
            )
            db.session.commit()
            return policy.id

        try:
            policy_id = run_with_retry(_op)
            return db.session.get(InsurancePolicy, policy_id)
        except IntegrityError as exc:
            if violates_constraint(exc, *ACTIVE_POLICY_CONSTRAINT):
                raise PolicyStateConflict(f"Order {order_id} already has an active policy") from exc
            if not violates_constraint(exc, *POLICY_NUMBER_CONSTRAINT):
                raise
    raise StateConflict("Could not allocate a unique policy number")


def _transition(policy_id: int, actor_id: str, *, to_status: str, action: str) -> InsurancePolicy:
    policy = _require_policy(policy_id)
    actor = _require_policy_owner(policy, actor_id)

    def _op():
        now = utcnow()
        current = db.session.get(InsurancePolicy, policy_id, populate_existing=True)
        if current.status == POLICY_ACTIVE and current.expires_at <= now:
            compare_and_set(
                InsurancePolicy,
                policy_id,
                expected={"status": POLICY_ACTIVE},
                values={"status": POLICY_EXPIRED, "updated_at": now},
            )
            db.session.commit()
            return False

        won = compare_and_set(
            InsurancePolicy,
            policy_id,
            expected={"status": POLICY_ACTIVE},
            values={"status": to_status, "updated_at": now},
        )
        if not won:
            status = db.session.query(InsurancePolicy.status).filter(InsurancePolicy.id == policy_id).scalar()
            raise PolicyStateConflict(
                f"Policy {policy_id} is {status}",
                details={"policy_id": policy_id, "status": status},
            )
        refreshed = db.session.get(InsurancePolicy, policy_id, populate_existing=True)
        append_activity(
            action=action,
            order_id=refreshed.order_id,
            user_id=actor.id,
            details=_event(refreshed),
        )
        db.session.commit()
        return True

    if not run_with_retry(_op):
        raise PolicyStateConflict(
            f"Policy {policy_id} has expired",
            details={"policy_id": policy_id, "status": POLICY_EXPIRED},
        )
    return db.session.get(InsurancePolicy, policy_id, populate_existing=True)


def claim_policy(policy_id: int, actor_id: str) -> InsurancePolicy:
    """active -> claimed. A policy past expires_at is marked expired instead."""
    return _transition(policy_id, actor_id, to_status=POLICY_CLAIMED, action="insurance_claimed")


def cancel_policy(policy_id: int, actor_id: str) -> InsurancePolicy:
    return _transition(policy_id, actor_id, to_status=POLICY_CANCELLED, action="insurance_cancelled")


def list_policies_for_order(order_id: int) -> list[InsurancePolicy]:
    return (
        db.session.query(InsurancePolicy)
        .filter(InsurancePolicy.order_id == order_id)
        .order_by(InsurancePolicy.created_at.desc(), InsurancePolicy.id.desc())
        .all()
    )
