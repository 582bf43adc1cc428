from __future__ import annotations

from ..extensions import db
from trustchain.time_utils import to_utc_z


class Profile(db.Model):
    """
    Local mirror of an identity-provider account.

    The id is issued by the identity provider and is opaque to the core.
    total_deliveries is only ever changed with a single SQL increment
    (see escrow_service.release_escrow).
    """
    __tablename__ = "profiles"
    __table_args__ = (
        db.Index("ix_profiles_role", "role"),
    )

    id = db.Column(db.String(64), primary_key=True)
    role = db.Column(db.String(16), nullable=False, default="customer")  # customer, driver, merchant, admin
    full_name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    verified = db.Column(db.Boolean, nullable=False, default=False)

    rating = db.Column(db.Float, nullable=False, default=5.0)
    total_deliveries = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "full_name": self.full_name,
            "phone": self.phone,
            "verified": self.verified,
            "rating": self.rating,
            "total_deliveries": self.total_deliveries,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
