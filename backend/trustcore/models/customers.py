from __future__ import annotations

from ..extensions import db
from trustcore.time_utils import to_utc_z


TIER_BRONZE = "BRONZE"
TIER_SILVER = "SILVER"
TIER_GOLD = "GOLD"
TIER_PLATINUM = "PLATINUM"


class Customer(db.Model):
    """
    Customer master data and loyalty balances.

    PII: email and phone are stored only as AES-GCM blobs (JSON text produced
    by CryptoVault.encrypt_field). Use services/customer_service.py to read
    or write them.

    Loyalty aggregates are denormalized and updated by the checkout ledger
    inside the same database transaction as the sale.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)

    email_encrypted = db.Column(db.Text, nullable=True)
    phone_encrypted = db.Column(db.Text, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    loyalty_points = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points_earned = db.Column(db.Integer, nullable=False, default=0)
    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    transaction_count = db.Column(db.Integer, nullable=False, default=0)
    loyalty_tier = db.Column(db.String(16), nullable=False, default=TIER_BRONZE)
    last_purchase_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def projection(self) -> dict:
        """Limited customer view embedded in checkout responses (no PII)."""
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "loyalty_points": self.loyalty_points,
            "loyalty_tier": self.loyalty_tier,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_active": self.is_active,
            "loyalty_points": self.loyalty_points,
            "lifetime_points_earned": self.lifetime_points_earned,
            "total_spent_cents": self.total_spent_cents,
            "transaction_count": self.transaction_count,
            "loyalty_tier": self.loyalty_tier,
            "last_purchase_at": to_utc_z(self.last_purchase_at) if self.last_purchase_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
