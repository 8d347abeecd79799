# Overview: Pytest coverage for atomic checkout, pricing and integrity verification.

"""
TransactionLedger tests.

Verifies:
- Pricing: subtotal, basis-point tax with restricted surtax, change, loyalty
- Validation failures abort with nothing written
- Atomic rollback when a later line loses its stock race
- Risk gate blocks high scores and fails open on scorer errors
- Timeout and PCI-safe payment persistence
- Line-item integrity verification detects tampering
"""

from datetime import datetime

import pytest
from sqlalchemy import func, select, update

from conftest import checkout_request, events_of
from trustcore.errors import (
    AdditionalVerificationRequired,
    AgeVerificationRequired,
    CheckoutTimeout,
    InsufficientCash,
    InsufficientStock,
    InvalidCustomer,
    ProductNotFound,
    TransactionNotFound,
    ValidationError,
)
from trustcore.extensions import db
from trustcore.models import AuditLog, CheckoutTransaction, Customer, LineItem, Product
from trustcore.models.customers import TIER_BRONZE, TIER_SILVER
from trustcore.services import security_events as events
from trustcore.services.fraud_scorer import FraudScorer
from trustcore.services.ledger_service import (
    CheckoutRequest,
    TransactionLedger,
    count_recent_checkouts,
    loyalty_tier_for,
    mask_card_number,
    sanitize_payment_data,
)
from trustcore.services.tax_service import (
    FixedTaxRateProvider,
    StoreTaxRateProvider,
    TaxRates,
    apply_bps,
    compute_tax,
)


def transaction_count() -> int:
    return db.session.execute(select(func.count(CheckoutTransaction.id))).scalar_one()


def stock(product) -> int:
    return db.session.execute(select(Product.quantity).where(Product.id == product.id)).scalar_one()


class TestTaxArithmetic:
    def test_half_up_rounding(self):
        assert apply_bps(3998, 800) == 320  # 319.84
        assert apply_bps(1, 5000) == 1  # 0.5 rounds up
        assert apply_bps(1, 4999) == 0
        assert apply_bps(0, 800) == 0

    def test_surtax_only_on_restricted_portion(self):
        breakdown = compute_tax(3000, 2000, TaxRates(base_rate_bps=800, restricted_surtax_bps=200))
        assert breakdown["base_tax_cents"] == 240
        assert breakdown["restricted_surtax_cents"] == 40
        assert breakdown["tax_cents"] == 280

    def test_store_rate_overrides_default(self, store):
        provider = StoreTaxRateProvider(default_rate_bps=500, restricted_surtax_bps=200)
        assert provider.rates_for(store.id).base_rate_bps == 800
        assert provider.rates_for(None).base_rate_bps == 500


class TestCheckoutSuccess:
    def test_card_checkout(self, ctx, cashier, widget):
        txn = ctx.ledger.checkout(checkout_request((widget, 2)), employee=cashier, ip_address="10.0.0.5")

        assert txn.subtotal_cents == 3998
        assert txn.tax_cents == 320
        assert txn.total_cents == 4318
        assert txn.payment_status == "COMPLETED"
        assert txn.store_id == cashier.store_id
        assert txn.cash_tendered_cents is None
        assert stock(widget) == 8

        lines = db.session.execute(select(LineItem).where(LineItem.transaction_id == txn.id)).scalars().all()
        assert len(lines) == 1
        assert lines[0].integrity_hash == ctx.vault.hash_line_item(lines[0].integrity_fields())

        audit = db.session.execute(select(AuditLog).where(AuditLog.entity_id == txn.id)).scalar_one()
        assert audit.event_type == "TRANSACTION_COMPLETED"
        assert audit.event_data["total_cents"] == 4318

        completed = events_of(events.TRANSACTION_COMPLETED)
        assert len(completed) == 1
        assert completed[0].success is True
        assert completed[0].ip_address == "10.0.0.5"

    def test_cash_change(self, ctx, cashier, widget):
        txn = ctx.ledger.checkout(
            checkout_request((widget, 2), payment_method="CASH", cash_tendered_cents=5000),
            employee=cashier,
        )
        assert txn.cash_tendered_cents == 5000
        assert txn.change_given_cents == 682

    def test_cash_without_tender_is_exact_change(self, ctx, cashier, widget):
        txn = ctx.ledger.checkout(checkout_request((widget, 1), payment_method="CASH"), employee=cashier)
        assert txn.cash_tendered_cents == txn.total_cents
        assert txn.change_given_cents == 0

    def test_restricted_surtax(self, ctx, cashier, cigarettes):
        txn = ctx.ledger.checkout(
            checkout_request((cigarettes, 2), age_verification_completed=True),
            employee=cashier,
        )
        # 8% base on 2000 plus 2% surtax on the restricted 2000
        assert txn.tax_cents == 160 + 40
        assert txn.age_verification_required is True
        assert txn.tax_breakdown["restricted_surtax_cents"] == 40

    def test_loyalty_points_and_tier(self, ctx, cashier, store, widget, customer):
        txn = ctx.ledger.checkout(checkout_request((widget, 2), customer_id=customer.id), employee=cashier)
        assert txn.loyalty_points_earned == 43

        refreshed = db.session.get(Customer, customer.id)
        assert refreshed.loyalty_points == 43
        assert refreshed.total_spent_cents == 4318
        assert refreshed.transaction_count == 1
        assert refreshed.loyalty_tier == TIER_BRONZE

        tv = Product(store_id=store.id, sku="TV-001", name="Television", price_cents=60_000, quantity=1)
        db.session.add(tv)
        db.session.commit()
        ctx.ledger.checkout(checkout_request((tv, 1), customer_id=customer.id), employee=cashier)

        refreshed = db.session.get(Customer, customer.id)
        assert refreshed.loyalty_tier == TIER_SILVER
        assert refreshed.transaction_count == 2

    def test_no_points_without_customer(self, ctx, cashier, widget):
        txn = ctx.ledger.checkout(checkout_request((widget, 1)), employee=cashier)
        assert txn.loyalty_points_earned == 0

    def test_payment_data_is_sanitized(self, ctx, cashier, widget):
        txn = ctx.ledger.checkout(
            checkout_request(
                (widget, 1),
                payment_data={
                    "card_number": "4111 1111 1111 1234",
                    "cvv": "123",
                    "expiry": "12/29",
                    "card_type": "VISA",
                    "authorization_code": "AUTH42",
                },
            ),
            employee=cashier,
        )
        stored = db.session.get(CheckoutTransaction, txn.id).payment_data
        assert stored == {
            "card_type": "VISA",
            "authorization_code": "AUTH42",
            "masked_card_number": "************1234",
            "last_four": "1234",
        }

    def test_duplicate_lines_share_stock(self, ctx, cashier, gadget):
        ctx.ledger.checkout(checkout_request((gadget, 2), (gadget, 2)), employee=cashier)
        assert stock(gadget) == 0


class TestCheckoutRejections:
    def assert_nothing_written(self):
        assert transaction_count() == 0
        assert db.session.execute(select(func.count(LineItem.id))).scalar_one() == 0
        assert db.session.execute(select(func.count(AuditLog.id))).scalar_one() == 0

    def test_insufficient_stock(self, ctx, cashier, gadget):
        with pytest.raises(InsufficientStock) as exc:
            ctx.ledger.checkout(checkout_request((gadget, 5)), employee=cashier)
        assert exc.value.details["requested"] == 5
        assert exc.value.details["available"] == 4
        assert stock(gadget) == 4
        self.assert_nothing_written()

        failed = events_of(events.TRANSACTION_FAILED)
        assert len(failed) == 1
        assert failed[0].details["code"] == "INSUFFICIENT_STOCK"

    def test_duplicate_lines_exceeding_stock(self, ctx, cashier, gadget):
        with pytest.raises(InsufficientStock):
            ctx.ledger.checkout(checkout_request((gadget, 3), (gadget, 2)), employee=cashier)
        assert stock(gadget) == 4

    def test_unknown_product(self, ctx, cashier, widget):
        request = CheckoutRequest.from_payload({
            "items": [{"product_id": widget.id, "quantity": 1}, {"product_id": 9999, "quantity": 1}],
            "payment_method": "card",
        })
        with pytest.raises(ProductNotFound):
            ctx.ledger.checkout(request, employee=cashier)
        assert stock(widget) == 10
        self.assert_nothing_written()

    def test_inactive_product(self, ctx, cashier, widget):
        widget.is_active = False
        db.session.commit()
        with pytest.raises(ProductNotFound):
            ctx.ledger.checkout(checkout_request((widget, 1)), employee=cashier)

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity(self, ctx, cashier, widget, quantity):
        with pytest.raises(ValidationError):
            ctx.ledger.checkout(checkout_request((widget, quantity)), employee=cashier)

    def test_invalid_payment_method(self, ctx, cashier, widget):
        with pytest.raises(ValidationError):
            ctx.ledger.checkout(checkout_request((widget, 1), payment_method="BITCOIN"), employee=cashier)

    def test_age_verification_required(self, ctx, cashier, widget, cigarettes):
        with pytest.raises(AgeVerificationRequired):
            ctx.ledger.checkout(checkout_request((widget, 1), (cigarettes, 1)), employee=cashier)
        assert stock(cigarettes) == 5
        self.assert_nothing_written()

    def test_inactive_customer(self, ctx, cashier, widget, customer):
        customer.is_active = False
        db.session.commit()
        with pytest.raises(InvalidCustomer):
            ctx.ledger.checkout(checkout_request((widget, 1), customer_id=customer.id), employee=cashier)

    def test_insufficient_cash(self, ctx, cashier, widget):
        with pytest.raises(InsufficientCash):
            ctx.ledger.checkout(
                checkout_request((widget, 1), payment_method="CASH", cash_tendered_cents=1000),
                employee=cashier,
            )
        self.assert_nothing_written()


class RacingTaxRates(FixedTaxRateProvider):
    """Sells out a product between validation and commit."""

    def __init__(self, product_id: int):
        super().__init__(TaxRates(base_rate_bps=800))
        self.product_id = product_id

    def rates_for(self, store_id):
        db.session.execute(update(Product).where(Product.id == self.product_id).values(quantity=0))
        db.session.commit()
        return super().rates_for(store_id)


class TestAtomicity:
    def test_lost_race_rolls_back_every_line(self, ctx, cashier, widget, gadget):
        ledger = TransactionLedger(ctx.vault, ctx.fraud, RacingTaxRates(gadget.id), ctx.events)

        with pytest.raises(InsufficientStock) as exc:
            ledger.checkout(checkout_request((widget, 2), (gadget, 1)), employee=cashier)

        assert exc.value.details == {"product_id": gadget.id, "requested": 1, "available": 0}
        assert stock(widget) == 10
        assert transaction_count() == 0
        assert db.session.execute(select(func.count(LineItem.id))).scalar_one() == 0

    def test_timeout_aborts(self, ctx, cashier, widget):
        readings = iter([0.0])

        def timer():
            return next(readings, 31.0)

        ledger = TransactionLedger(
            ctx.vault,
            ctx.fraud,
            FixedTaxRateProvider(TaxRates(base_rate_bps=800)),
            ctx.events,
            timeout_seconds=30,
            timer=timer,
        )
        with pytest.raises(CheckoutTimeout):
            ledger.checkout(checkout_request((widget, 1)), employee=cashier)
        assert stock(widget) == 10
        assert transaction_count() == 0
        assert events_of(events.TRANSACTION_FAILED)[0].details["code"] == "CHECKOUT_TIMEOUT"

    def test_postgres_timeouts_use_remaining_budget(self, ctx, monkeypatch):
        ledger = TransactionLedger(
            ctx.vault,
            ctx.fraud,
            FixedTaxRateProvider(TaxRates(base_rate_bps=800)),
            ctx.events,
            timeout_seconds=30,
            timer=lambda: 12.5,
        )
        statements = []
        postgres = type("Bind", (), {"dialect": type("Dialect", (), {"name": "postgresql"})()})()
        monkeypatch.setattr(db.session, "get_bind", lambda *a, **kw: postgres)
        monkeypatch.setattr(db.session, "execute", lambda clause, *a, **kw: statements.append(str(clause)))

        ledger._begin_write_transaction(deadline=30.0)

        assert statements == [
            "SET TRANSACTION ISOLATION LEVEL READ COMMITTED",
            "SET LOCAL statement_timeout = 17500",
            "SET LOCAL idle_in_transaction_session_timeout = 17500",
        ]


class TestRiskGate:
    @pytest.fixture
    def jewelry(self, store):
        product = Product(store_id=store.id, sku="JWL-001", name="Necklace", price_cents=200_000, quantity=3)
        db.session.add(product)
        db.session.commit()
        return product

    def test_high_risk_blocks(self, ctx, cashier, jewelry):
        night = datetime(2026, 3, 10, 2, 0, 0)
        ctx.ledger.fraud_scorer = FraudScorer(lambda employee_id, since: 5, clock=lambda: night)

        with pytest.raises(AdditionalVerificationRequired) as exc:
            ctx.ledger.checkout(checkout_request((jewelry, 1)), employee=cashier)

        assert exc.value.http_status == 403
        assert exc.value.details["risk"]["score"] == 90
        assert stock(jewelry) == 3
        assert transaction_count() == 0

        flagged = events_of(events.HIGH_RISK_TRANSACTION)
        assert len(flagged) == 1
        assert flagged[0].details["risk"]["level"] == "high"
        assert events_of(events.TRANSACTION_FAILED) == []

    def test_medium_risk_is_recorded(self, ctx, cashier, jewelry):
        txn = ctx.ledger.checkout(checkout_request((jewelry, 1)), employee=cashier)
        assert txn.risk_assessment["score"] == 30
        assert txn.risk_assessment["factors"] == ["Large transaction amount"]

    def test_scorer_failure_fails_open(self, ctx, cashier, jewelry):
        def broken(employee_id, since):
            raise RuntimeError("velocity store down")

        night = datetime(2026, 3, 10, 2, 0, 0)
        ctx.ledger.fraud_scorer = FraudScorer(broken, clock=lambda: night)

        txn = ctx.ledger.checkout(checkout_request((jewelry, 1)), employee=cashier)
        assert txn.risk_assessment["score"] == 50
        assert stock(jewelry) == 2

    def test_velocity_counts_committed_checkouts(self, ctx, cashier, widget):
        ctx.ledger.fraud_scorer = FraudScorer(count_recent_checkouts)
        for _ in range(5):
            ctx.ledger.checkout(checkout_request((widget, 1)), employee=cashier)
        txn = ctx.ledger.checkout(checkout_request((widget, 1)), employee=cashier)
        assert "Rapid successive transactions" in txn.risk_assessment["factors"]


class TestIntegrity:
    def test_untouched_transaction_verifies(self, ctx, cashier, widget, gadget):
        txn = ctx.ledger.checkout(checkout_request((widget, 1), (gadget, 2)), employee=cashier)
        report = ctx.ledger.verify_integrity(txn.id)
        assert report.integrity_valid
        assert [line.line_number for line in report.lines] == [1, 2]
        assert events_of(events.INTEGRITY_MISMATCH) == []

    def test_tampered_price_detected(self, ctx, cashier, manager, widget, gadget):
        txn = ctx.ledger.checkout(checkout_request((widget, 1), (gadget, 2)), employee=cashier)
        db.session.execute(
            update(LineItem)
            .where(LineItem.transaction_id == txn.id, LineItem.product_id == widget.id)
            .values(unit_price_cents=1)
        )
        db.session.commit()

        report = ctx.ledger.verify_integrity(txn.id, user_id=manager.id)
        assert not report.integrity_valid
        assert [line.valid for line in report.lines] == [False, True]

        mismatches = events_of(events.INTEGRITY_MISMATCH)
        assert len(mismatches) == 1
        assert mismatches[0].user_id == manager.id
        assert mismatches[0].details["transaction_id"] == txn.id

    def test_unknown_transaction(self, ctx):
        with pytest.raises(TransactionNotFound):
            ctx.ledger.verify_integrity(424242)


class TestHelpers:
    @pytest.mark.parametrize("spent, tier", [(0, "BRONZE"), (50_000, "SILVER"), (199_999, "SILVER"),
                                             (200_000, "GOLD"), (500_000, "PLATINUM")])
    def test_loyalty_tiers(self, spent, tier):
        assert loyalty_tier_for(spent) == tier

    def test_mask_card_number(self):
        assert mask_card_number("4111-1111-1111-1234") == "************1234"
        assert mask_card_number("12") == "****"

    def test_sanitize_drops_unknown_fields(self):
        assert sanitize_payment_data({"track2": "raw", "pin": "0000", "last_four": "98765"}) == {"last_four": "8765"}
        assert sanitize_payment_data(None) == {}

    def test_from_payload_rejects_malformed(self):
        with pytest.raises(ValidationError):
            CheckoutRequest.from_payload({"items": [], "payment_method": "CARD"})
        with pytest.raises(ValidationError):
            CheckoutRequest.from_payload({"items": [{"product_id": "1", "quantity": 1}], "payment_method": "CARD"})
        with pytest.raises(ValidationError):
            CheckoutRequest.from_payload({"items": [{"product_id": 1, "quantity": True}], "payment_method": "CARD"})
        with pytest.raises(ValidationError):
            CheckoutRequest.from_payload(["not", "an", "object"])
