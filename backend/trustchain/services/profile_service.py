# Overview: Service-layer operations for the local mirror of identity-provider accounts.

from __future__ import annotations

from ..extensions import db
from ..models import Profile
from ..models.states import VALID_ROLES
from ..validation import AuthorizationError, NotFoundError, ValidationError
from .concurrency import run_with_retry


def get_profile(user_id: str) -> Profile | None:
    if not user_id:
        return None
    return db.session.get(Profile, user_id)


def require_profile(user_id: str, *, role: str | None = None, label: str = "User") -> Profile:
    """
    Load a profile or raise.

    NotFoundError if it does not exist; AuthorizationError if a role is
    required and the profile has a different one.
    """
    profile = get_profile(user_id)
    if profile is None:
        raise NotFoundError(f"{label} {user_id} not found")
    if role is not None and profile.role != role:
        raise AuthorizationError(f"{label} {user_id} does not have role {role}")
    return profile


def upsert_profile(
    *,
    user_id: str,
    role: str,
    full_name: str,
    phone: str | None = None,
    verified: bool | None = None,
) -> Profile:
    """
    Create or update the mirror of an identity-provider account.

    rating and total_deliveries are never touched here.
    """
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("user_id is required")
    if len(user_id) > 64:
        raise ValidationError("user_id exceeds max length 64")
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of {sorted(VALID_ROLES)}")
    full_name = (full_name or "").strip()
    if not full_name:
        raise ValidationError("full_name is required")

    def _op():
        profile = db.session.get(Profile, user_id)
        if profile is None:
            profile = Profile(id=user_id, role=role, full_name=full_name, phone=phone, verified=bool(verified))
            db.session.add(profile)
        else:
            profile.role = role
            profile.full_name = full_name
            if phone is not None:
                profile.phone = phone
            if verified is not None:
                profile.verified = bool(verified)
        db.session.commit()
        return profile

    return run_with_retry(_op)


def list_profiles(*, role: str | None = None) -> list[Profile]:
    query = db.session.query(Profile)
    if role:
        query = query.filter(Profile.role == role)
    return query.order_by(Profile.id.asc()).all()
