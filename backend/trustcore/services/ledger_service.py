# Overview: Atomic checkout and line-item integrity verification.

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import OperationalError

from ..extensions import db
from ..models import AuditLog, CheckoutTransaction, Customer, LineItem, Product, Store
from ..models.customers import TIER_BRONZE, TIER_GOLD, TIER_PLATINUM, TIER_SILVER
from ..errors import (
    AdditionalVerificationRequired,
    AgeVerificationRequired,
    CheckoutConflict,
    CheckoutTimeout,
    InsufficientCash,
    InsufficientStock,
    InvalidCustomer,
    ProductNotFound,
    TransactionNotFound,
    TrustCoreError,
    ValidationError,
)
from . import security_events as events
from .crypto_vault import CryptoVault
from .fraud_scorer import FraudScorer, RiskAssessment
from .security_events import SecurityEventSink
from .tax_service import TaxRateProvider, compute_tax
from trustcore.time_utils import epoch_ms, to_utc_z, utcnow

"""
Transaction Ledger Invariants (authoritative)

- A checkout moves VALIDATING -> PRICING -> RISK_GATE -> COMMITTING and ends
  COMMITTED or ABORTED. Nothing is written before COMMITTING.
- COMMITTING is one database transaction: transaction row, line items with
  integrity hashes, inventory decrements, loyalty updates and the audit row
  are written together or not at all.
- Inventory is decremented only by a conditional UPDATE
  (quantity >= requested). Zero affected rows aborts the whole checkout.
- No automatic retry. A lost race surfaces as InsufficientStock; the
  caller decides whether to resubmit.
- Committed transactions and line items are never mutated here.
- Exactly one security event per checkout, emitted after the database
  transaction has committed or rolled back.
"""


logger = logging.getLogger(__name__)


STATE_VALIDATING = "VALIDATING"
STATE_PRICING = "PRICING"
STATE_RISK_GATE = "RISK_GATE"
STATE_COMMITTING = "COMMITTING"
STATE_COMMITTED = "COMMITTED"
STATE_ABORTED = "ABORTED"

PAYMENT_CASH = "CASH"
VALID_PAYMENT_METHODS = ("CASH", "CARD", "MOBILE", "GIFT_CARD")

# Loyalty tiers by lifetime spend (cents), highest first
LOYALTY_TIERS = (
    (500_000, TIER_PLATINUM),
    (200_000, TIER_GOLD),
    (50_000, TIER_SILVER),
    (0, TIER_BRONZE),
)

# Only these payment fields are ever persisted
SAFE_PAYMENT_FIELDS = ("card_type", "authorization_code", "processor_reference", "entry_mode")


# =============================================================================
# REQUEST / DRAFT
# =============================================================================

@dataclass(frozen=True)
class CheckoutItem:
    product_id: int
    quantity: int


@dataclass
class CheckoutRequest:
    items: list[CheckoutItem]
    payment_method: str
    customer_id: int | None = None
    store_id: int | None = None
    payment_data: dict = field(default_factory=dict)
    age_verification_completed: bool = False
    cash_tendered_cents: int | None = None

    @classmethod
    def from_payload(cls, data: dict | None) -> "CheckoutRequest":
        """Parse a JSON checkout body. Raises ValidationError on malformed input."""
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        raw_items = data.get("items")
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("items must be a non-empty list")

        items = []
        for index, raw in enumerate(raw_items):
            if not isinstance(raw, dict):
                raise ValidationError("Each item must be an object", details={"line": index + 1})
            items.append(CheckoutItem(
                product_id=_require_int(raw.get("product_id"), "product_id", index),
                quantity=_require_int(raw.get("quantity"), "quantity", index),
            ))

        payment_method = str(data.get("payment_method") or "").upper()
        customer_id = data.get("customer_id")
        store_id = data.get("store_id")
        cash_tendered = data.get("cash_tendered_cents")
        for name, value in (("customer_id", customer_id), ("store_id", store_id), ("cash_tendered_cents", cash_tendered)):
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(f"{name} must be an integer")

        payment_data = data.get("payment_data") or {}
        if not isinstance(payment_data, dict):
            raise ValidationError("payment_data must be an object")

        return cls(
            items=items,
            payment_method=payment_method,
            customer_id=customer_id,
            store_id=store_id,
            payment_data=payment_data,
            age_verification_completed=bool(data.get("age_verification_completed", False)),
            cash_tendered_cents=cash_tendered,
        )


def _require_int(value, name: str, index: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", details={"line": index + 1})
    return value


@dataclass
class DraftLine:
    line_number: int
    product_id: int
    product_name: str
    product_sku: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    age_restricted: bool
    lot_number: str | None

    def integrity_fields(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


@dataclass
class CheckoutDraft:
    """In-memory checkout; becomes a CheckoutTransaction only on commit."""
    request: CheckoutRequest
    employee_id: int
    store_id: int | None
    store_timezone: str | None = None
    lines: list[DraftLine] = field(default_factory=list)
    customer_id: int | None = None
    subtotal_cents: int = 0
    restricted_subtotal_cents: int = 0
    tax_breakdown: dict = field(default_factory=dict)
    tax_cents: int = 0
    total_cents: int = 0
    loyalty_points: int = 0
    cash_tendered_cents: int | None = None
    change_given_cents: int | None = None
    state: str = STATE_VALIDATING

    @property
    def age_verification_required(self) -> bool:
        return any(line.age_restricted for line in self.lines)


@dataclass
class LineIntegrityResult:
    line_item_id: int
    line_number: int
    product_id: int
    valid: bool

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "valid": self.valid,
        }


@dataclass
class IntegrityReport:
    transaction_id: int
    integrity_valid: bool
    lines: list[LineIntegrityResult]
    checked_at: datetime

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "integrity_valid": self.integrity_valid,
            "lines": [line.to_dict() for line in self.lines],
            "checked_at": to_utc_z(self.checked_at),
        }


# =============================================================================
# HELPERS
# =============================================================================

def loyalty_tier_for(total_spent_cents: int) -> str:
    for threshold, tier in LOYALTY_TIERS:
        if total_spent_cents >= threshold:
            return tier
    return TIER_BRONZE


def mask_card_number(card_number: str) -> str:
    digits = "".join(ch for ch in str(card_number) if ch.isdigit())
    if len(digits) < 4:
        return "****"
    return "*" * (len(digits) - 4) + digits[-4:]


def sanitize_payment_data(payment_data: dict | None) -> dict:
    """
    PCI-safe projection of payment metadata.

    Card numbers are reduced to a mask and last four; CVV, expiry, track
    data and anything unrecognized is dropped.
    """
    payment_data = payment_data or {}
    safe = {key: payment_data[key] for key in SAFE_PAYMENT_FIELDS if payment_data.get(key) is not None}

    card_number = payment_data.get("card_number")
    if card_number:
        safe["masked_card_number"] = mask_card_number(card_number)
        safe["last_four"] = safe["masked_card_number"][-4:]
    elif payment_data.get("last_four"):
        safe["last_four"] = str(payment_data["last_four"])[-4:]
    return safe


def generate_receipt_number(now: datetime | None = None) -> str:
    return f"{epoch_ms(now)}-{secrets.token_hex(4)}"


def count_recent_checkouts(employee_id: int, since: datetime) -> int:
    """Default velocity counter: committed checkouts by the employee since `since`."""
    return db.session.execute(
        select(func.count(CheckoutTransaction.id)).where(
            CheckoutTransaction.employee_id == employee_id,
            CheckoutTransaction.created_at >= since,
        )
    ).scalar_one()


# =============================================================================
# LEDGER
# =============================================================================

class TransactionLedger:
    def __init__(
        self,
        vault: CryptoVault,
        fraud_scorer: FraudScorer,
        tax_rates: TaxRateProvider,
        event_sink: SecurityEventSink,
        *,
        timeout_seconds: float = 30,
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.vault = vault
        self.fraud_scorer = fraud_scorer
        self.tax_rates = tax_rates
        self.events = event_sink
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._timer = timer

    # -------------------------------------------------------------------------
    # checkout
    # -------------------------------------------------------------------------

    def checkout(
        self,
        request: CheckoutRequest,
        *,
        employee,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> CheckoutTransaction:
        """
        Validate, price, risk-gate and atomically commit a checkout.

        Returns the committed CheckoutTransaction. Any failure rolls back
        every write and raises a typed TrustCoreError.
        """
        started = self._timer()
        deadline = started + self.timeout_seconds
        draft = None
        audit = {"user_id": employee.id, "ip_address": ip_address, "user_agent": user_agent}

        try:
            draft = self._validate(request, employee)

            draft.state = STATE_PRICING
            self._price(draft)

            draft.state = STATE_RISK_GATE
            risk = self.fraud_scorer.score(
                employee_id=employee.id,
                total_cents=draft.total_cents,
                store_timezone=draft.store_timezone,
            )
            if risk.requires_verification:
                raise AdditionalVerificationRequired(
                    "Transaction requires additional verification",
                    details={"risk": risk.to_dict()},
                )

            draft.state = STATE_COMMITTING
            transaction = self._commit(draft, risk, deadline, started, audit)
        except TrustCoreError as exc:
            db.session.rollback()
            if draft is not None:
                draft.state = STATE_ABORTED
            event_type = (
                events.HIGH_RISK_TRANSACTION
                if isinstance(exc, AdditionalVerificationRequired)
                else events.TRANSACTION_FAILED
            )
            events.record_safely(
                self.events,
                event_type,
                success=False,
                resource="checkout",
                reason=exc.message,
                details={"code": exc.code, **exc.details},
                **audit,
            )
            raise
        except Exception:
            db.session.rollback()
            logger.exception("Checkout failed unexpectedly for employee %s", employee.id)
            events.record_safely(
                self.events,
                events.TRANSACTION_FAILED,
                success=False,
                resource="checkout",
                reason="Internal error",
                **audit,
            )
            raise

        draft.state = STATE_COMMITTED
        events.record_safely(
            self.events,
            events.TRANSACTION_COMPLETED,
            success=True,
            resource="checkout",
            details={
                "transaction_id": transaction.id,
                "receipt_number": transaction.receipt_number,
                "total_cents": transaction.total_cents,
                "risk_score": risk.score,
            },
            **audit,
        )
        return transaction

    def _validate(self, request: CheckoutRequest, employee) -> CheckoutDraft:
        if not request.items:
            raise ValidationError("At least one item is required")
        if request.payment_method not in VALID_PAYMENT_METHODS:
            raise ValidationError(
                "Invalid payment method",
                details={"valid_payment_methods": list(VALID_PAYMENT_METHODS)},
            )

        store_id = request.store_id if request.store_id is not None else employee.store_id
        draft = CheckoutDraft(request=request, employee_id=employee.id, store_id=store_id)
        if store_id is not None:
            store = db.session.get(Store, store_id)
            if store is None or not store.is_active:
                raise ValidationError("Store not found", details={"store_id": store_id})
            draft.store_timezone = store.timezone

        requested: dict[int, int] = {}
        for number, item in enumerate(request.items, start=1):
            if item.quantity <= 0:
                raise ValidationError(
                    "Quantity must be a positive integer",
                    details={"line": number, "product_id": item.product_id},
                )

            product = db.session.get(Product, item.product_id)
            if product is None or not product.is_active:
                raise ProductNotFound(
                    f"Product {item.product_id} not found",
                    details={"product_id": item.product_id},
                )

            requested[product.id] = requested.get(product.id, 0) + item.quantity
            if product.quantity < requested[product.id]:
                raise InsufficientStock(
                    f"Insufficient stock for {product.name}",
                    details={
                        "product_id": product.id,
                        "requested": requested[product.id],
                        "available": product.quantity,
                    },
                )

            draft.lines.append(DraftLine(
                line_number=number,
                product_id=product.id,
                product_name=product.name,
                product_sku=product.sku,
                quantity=item.quantity,
                unit_price_cents=product.price_cents,
                line_total_cents=product.price_cents * item.quantity,
                age_restricted=bool(product.age_restricted),
                lot_number=product.lot_number,
            ))

        if draft.age_verification_required and not request.age_verification_completed:
            raise AgeVerificationRequired(
                "Age verification required for restricted products",
                details={"product_ids": [line.product_id for line in draft.lines if line.age_restricted]},
            )

        if request.customer_id is not None:
            customer = db.session.get(Customer, request.customer_id)
            if customer is None or not customer.is_active:
                raise InvalidCustomer(
                    "Customer not found or inactive",
                    details={"customer_id": request.customer_id},
                )
            draft.customer_id = customer.id

        return draft

    def _price(self, draft: CheckoutDraft) -> None:
        draft.subtotal_cents = sum(line.line_total_cents for line in draft.lines)
        draft.restricted_subtotal_cents = sum(
            line.line_total_cents for line in draft.lines if line.age_restricted
        )

        rates = self.tax_rates.rates_for(draft.store_id)
        draft.tax_breakdown = compute_tax(draft.subtotal_cents, draft.restricted_subtotal_cents, rates)
        draft.tax_cents = draft.tax_breakdown["tax_cents"]
        draft.total_cents = draft.subtotal_cents + draft.tax_cents

        if draft.customer_id is not None:
            draft.loyalty_points = draft.total_cents // 100

        if draft.request.payment_method == PAYMENT_CASH:
            tendered = draft.request.cash_tendered_cents
            if tendered is None:
                tendered = draft.total_cents
            if tendered < draft.total_cents:
                raise InsufficientCash(
                    "Cash tendered is less than the total",
                    details={"total_cents": draft.total_cents, "cash_tendered_cents": tendered},
                )
            draft.cash_tendered_cents = tendered
            draft.change_given_cents = tendered - draft.total_cents

    def _check_deadline(self, deadline: float) -> None:
        if self._timer() > deadline:
            raise CheckoutTimeout(
                "Checkout exceeded its time limit",
                details={"timeout_seconds": self.timeout_seconds},
            )

    def _begin_write_transaction(self, deadline: float) -> None:
        """
        Open the write transaction.

        SQLite: BEGIN IMMEDIATE takes the database write lock up front.

        PostgreSQL: statement_timeout bounds each statement and
        idle_in_transaction_session_timeout bounds the gaps between them,
        both set to the remaining budget. Neither caps the unit as a whole;
        that bound is _check_deadline, run before every line and the commit.
        """
        # End the read-only validation transaction so the write lock is taken fresh
        db.session.rollback()
        dialect = db.session.get_bind().dialect.name
        if dialect == "sqlite":
            db.session.execute(text("BEGIN IMMEDIATE"))
        elif dialect == "postgresql":
            remaining_ms = max(int((deadline - self._timer()) * 1000), 1)
            db.session.execute(text("SET TRANSACTION ISOLATION LEVEL READ COMMITTED"))
            db.session.execute(text(f"SET LOCAL statement_timeout = {remaining_ms}"))
            db.session.execute(text(f"SET LOCAL idle_in_transaction_session_timeout = {remaining_ms}"))

    def _commit(
        self,
        draft: CheckoutDraft,
        risk: RiskAssessment,
        deadline: float,
        started: float,
        audit: dict,
    ) -> CheckoutTransaction:
        request = draft.request
        now = self._clock()

        try:
            self._begin_write_transaction(deadline)

            transaction = CheckoutTransaction(
                transaction_uuid=str(uuid.uuid4()),
                receipt_number=generate_receipt_number(now),
                store_id=draft.store_id,
                customer_id=draft.customer_id,
                employee_id=draft.employee_id,
                subtotal_cents=draft.subtotal_cents,
                tax_cents=draft.tax_cents,
                total_cents=draft.total_cents,
                payment_method=request.payment_method,
                payment_status="COMPLETED",
                cash_tendered_cents=draft.cash_tendered_cents,
                change_given_cents=draft.change_given_cents,
                age_verification_required=draft.age_verification_required,
                age_verification_completed=bool(request.age_verification_completed),
                loyalty_points_earned=draft.loyalty_points,
                tax_breakdown=draft.tax_breakdown,
                payment_data=sanitize_payment_data(request.payment_data),
                risk_assessment=risk.to_dict(),
                created_at=now,
            )
            db.session.add(transaction)
            db.session.flush()

            for line in draft.lines:
                self._check_deadline(deadline)

                db.session.add(LineItem(
                    transaction_id=transaction.id,
                    line_number=line.line_number,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    product_sku=line.product_sku,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    line_total_cents=line.line_total_cents,
                    age_verification_required=line.age_restricted,
                    lot_number=line.lot_number,
                    integrity_hash=self.vault.hash_line_item(line.integrity_fields()),
                    created_at=now,
                ))

                result = db.session.execute(
                    update(Product)
                    .where(Product.id == line.product_id, Product.quantity >= line.quantity)
                    .values(quantity=Product.quantity - line.quantity, version_id=Product.version_id + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    available = db.session.execute(
                        select(Product.quantity).where(Product.id == line.product_id)
                    ).scalar()
                    raise InsufficientStock(
                        f"Insufficient stock for {line.product_name}",
                        details={
                            "product_id": line.product_id,
                            "requested": line.quantity,
                            "available": available or 0,
                        },
                    )

            if draft.customer_id is not None:
                self._apply_loyalty(draft, now)

            db.session.add(AuditLog(
                event_type="TRANSACTION_COMPLETED",
                entity_type="transaction",
                entity_id=transaction.id,
                user_id=draft.employee_id,
                ip_address=audit.get("ip_address"),
                user_agent=(audit.get("user_agent") or "")[:512] or None,
                event_data={
                    "receipt_number": transaction.receipt_number,
                    "total_cents": draft.total_cents,
                    "item_count": len(draft.lines),
                    "payment_method": request.payment_method,
                    "customer_id": draft.customer_id,
                    "risk": risk.to_dict(),
                },
                severity="MEDIUM" if risk.score else "LOW",
                created_at=now,
            ))

            self._check_deadline(deadline)
            transaction.processing_time_ms = int((self._timer() - started) * 1000)
            db.session.commit()
        except OperationalError as exc:
            db.session.rollback()
            if self._timer() > deadline:
                raise CheckoutTimeout(
                    "Checkout exceeded its time limit",
                    details={"timeout_seconds": self.timeout_seconds},
                ) from exc
            raise CheckoutConflict("Checkout could not acquire the inventory lock") from exc

        logger.info(
            "Checkout %s committed: %d lines, total %d cents, employee %s",
            transaction.receipt_number, len(draft.lines), draft.total_cents, draft.employee_id,
        )
        return transaction

    def _apply_loyalty(self, draft: CheckoutDraft, now: datetime) -> None:
        db.session.execute(
            update(Customer)
            .where(Customer.id == draft.customer_id)
            .values(
                loyalty_points=Customer.loyalty_points + draft.loyalty_points,
                lifetime_points_earned=Customer.lifetime_points_earned + draft.loyalty_points,
                total_spent_cents=Customer.total_spent_cents + draft.total_cents,
                transaction_count=Customer.transaction_count + 1,
                last_purchase_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        row = db.session.execute(
            select(Customer.total_spent_cents, Customer.loyalty_tier).where(Customer.id == draft.customer_id)
        ).one()
        tier = loyalty_tier_for(row.total_spent_cents)
        if tier != row.loyalty_tier:
            db.session.execute(
                update(Customer)
                .where(Customer.id == draft.customer_id)
                .values(loyalty_tier=tier)
                .execution_options(synchronize_session=False)
            )

    # -------------------------------------------------------------------------
    # integrity
    # -------------------------------------------------------------------------

    def verify_integrity(
        self,
        transaction_id: int,
        *,
        user_id: int | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IntegrityReport:
        """
        Recompute every line hash of a committed transaction.

        A mismatch marks the report invalid but still returns every line's
        result, and records one INTEGRITY_MISMATCH security event.
        """
        transaction = db.session.get(CheckoutTransaction, transaction_id)
        if transaction is None:
            raise TransactionNotFound(
                f"Transaction {transaction_id} not found",
                details={"transaction_id": transaction_id},
            )

        lines = db.session.execute(
            select(LineItem)
            .where(LineItem.transaction_id == transaction.id)
            .order_by(LineItem.line_number)
        ).scalars().all()

        results = [
            LineIntegrityResult(
                line_item_id=line.id,
                line_number=line.line_number,
                product_id=line.product_id,
                valid=self.vault.verify_line_item(line.integrity_fields(), line.integrity_hash),
            )
            for line in lines
        ]
        report = IntegrityReport(
            transaction_id=transaction.id,
            integrity_valid=all(r.valid for r in results),
            lines=results,
            checked_at=self._clock(),
        )

        if not report.integrity_valid:
            invalid = [r.line_item_id for r in results if not r.valid]
            logger.error("Integrity mismatch on transaction %s lines %s", transaction.id, invalid)
            events.record_safely(
                self.events,
                events.INTEGRITY_MISMATCH,
                success=False,
                user_id=user_id,
                resource=f"transaction:{transaction.id}",
                reason="Line item hash mismatch",
                details={"transaction_id": transaction.id, "line_item_ids": invalid},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return report
