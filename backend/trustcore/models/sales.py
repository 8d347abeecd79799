from __future__ import annotations

from ..extensions import db
from trustcore.time_utils import to_utc_z


class CheckoutTransaction(db.Model):
    """
    Committed checkout (receipt-level record).

    IMMUTABLE: Rows are created only inside the atomic checkout unit and are
    never updated afterwards. Corrections are new reversing transactions.

    payment_data holds PCI-safe fields only (masked card number, card type,
    authorization code, processor reference). Never card numbers, CVV or
    expiry.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("receipt_number", name="uq_transactions_receipt_number"),
        db.UniqueConstraint("transaction_uuid", name="uq_transactions_uuid"),
        db.Index("ix_transactions_employee_created", "employee_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_uuid = db.Column(db.String(36), nullable=False)
    receipt_number = db.Column(db.String(64), nullable=False)

    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(16), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default="COMPLETED")
    cash_tendered_cents = db.Column(db.Integer, nullable=True)
    change_given_cents = db.Column(db.Integer, nullable=True)

    age_verification_required = db.Column(db.Boolean, nullable=False, default=False)
    age_verification_completed = db.Column(db.Boolean, nullable=False, default=False)

    loyalty_points_earned = db.Column(db.Integer, nullable=False, default=0)

    tax_breakdown = db.Column(db.JSON, nullable=False, default=dict)
    payment_data = db.Column(db.JSON, nullable=False, default=dict)
    # Risk assessment snapshot: {"score": int, "factors": [...], "level": str}
    risk_assessment = db.Column(db.JSON, nullable=False, default=dict)
    processing_time_ms = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    customer = db.relationship("Customer", backref=db.backref("transactions", lazy=True))
    employee = db.relationship("User", backref=db.backref("transactions", lazy=True))
    store = db.relationship("Store")

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "transaction_uuid": self.transaction_uuid,
            "receipt_number": self.receipt_number,
            "store_id": self.store_id,
            "customer_id": self.customer_id,
            "employee_id": self.employee_id,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "cash_tendered_cents": self.cash_tendered_cents,
            "change_given_cents": self.change_given_cents,
            "age_verification_required": self.age_verification_required,
            "age_verification_completed": self.age_verification_completed,
            "loyalty_points_earned": self.loyalty_points_earned,
            "tax_breakdown": self.tax_breakdown,
            "payment_data": self.payment_data,
            "risk_assessment": self.risk_assessment,
            "processing_time_ms": self.processing_time_ms,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["line_items"] = [line.to_dict() for line in sorted(self.line_items, key=lambda l: l.line_number)]
            data["customer"] = self.customer.projection() if self.customer else None
            data["employee"] = self.employee.projection() if self.employee else None
        return data


class LineItem(db.Model):
    """
    Line item with tamper-detection hash.

    integrity_hash covers (product_id, quantity, unit_price_cents,
    line_total_cents). Recomputing it from the stored values must reproduce
    the stored hash; see TransactionLedger.verify_integrity.
    """
    __tablename__ = "line_items"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "line_number", name="uq_line_items_transaction_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Snapshot of product data at sale time
    product_name = db.Column(db.String(255), nullable=False)
    product_sku = db.Column(db.String(64), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    age_verification_required = db.Column(db.Boolean, nullable=False, default=False)
    lot_number = db.Column(db.String(64), nullable=True)

    integrity_hash = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    transaction = db.relationship("CheckoutTransaction", backref=db.backref("line_items", lazy=True))
    product = db.relationship("Product")

    def integrity_fields(self) -> dict:
        """The canonical tuple covered by integrity_hash."""
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "age_verification_required": self.age_verification_required,
            "lot_number": self.lot_number,
            "created_at": to_utc_z(self.created_at),
        }
