# Overview: Flask API routes for secure checkout and integrity verification.

# backend/trustcore/routes/transactions.py
"""Checkout API routes with authentication, CSRF and rate limiting"""

from flask import Blueprint, current_app, g, jsonify, request

from ..context import get_security_context
from ..decorators import csrf_protect, rate_limit_checkout, require_auth, require_role
from ..errors import TransactionNotFound, TrustCoreError
from ..extensions import db
from ..models import CheckoutTransaction
from ..models.auth import ROLE_ADMIN, ROLE_MANAGER
from ..services.ledger_service import CheckoutRequest


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


@transactions_bp.post("/secure")
@require_auth
@csrf_protect
@rate_limit_checkout
def secure_checkout_route():
    """
    Atomic checkout.

    Body:
    {
      "items": [{"product_id": int, "quantity": int}, ...],
      "payment_method": "CASH" | "CARD" | "MOBILE" | "GIFT_CARD",
      "customer_id": int | null,
      "store_id": int | null,
      "payment_data": {...},            # tokenized/masked only
      "age_verification_completed": bool,
      "cash_tendered_cents": int | null
    }

    Returns the committed transaction with line items, customer and
    employee projections. Nothing is written on failure.
    """
    try:
        checkout = CheckoutRequest.from_payload(request.get_json(silent=True))
        transaction = get_security_context().ledger.checkout(
            checkout,
            employee=g.current_user,
            ip_address=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
        return jsonify({"transaction": transaction.to_dict(include_lines=True)}), 201

    except TrustCoreError:
        raise
    except Exception:
        current_app.logger.exception("Failed to process checkout")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


@transactions_bp.get("/<int:transaction_id>")
@require_auth
def get_transaction_route(transaction_id: int):
    transaction = db.session.get(CheckoutTransaction, transaction_id)
    if transaction is None:
        raise TransactionNotFound(
            f"Transaction {transaction_id} not found",
            details={"transaction_id": transaction_id},
        )
    return jsonify({"transaction": transaction.to_dict(include_lines=True)})


@transactions_bp.get("/<int:transaction_id>/integrity")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def verify_integrity_route(transaction_id: int):
    """
    Recompute every line hash of a transaction.

    Requires: MANAGER or ADMIN
    200 with integrity_valid false when any line was tampered with.
    """
    report = get_security_context().ledger.verify_integrity(
        transaction_id,
        user_id=g.current_user.id,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(report.to_dict())
