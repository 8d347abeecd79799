# Overview: Flask API routes for customer contact details (encrypted at rest).

# backend/trustcore/routes/customers.py
"""
Customer contact API routes

Contact details are decrypted only on request. A blob that fails to
decrypt returns 422 DECRYPTION_ERROR and records a security event.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..context import get_security_context
from ..decorators import csrf_protect, require_auth, require_role
from ..errors import TrustCoreError, ValidationError
from ..models.auth import ROLE_ADMIN, ROLE_MANAGER
from ..services import customer_service


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("/<int:customer_id>/contact")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
def get_contact_route(customer_id: int):
    """
    Decrypted email and phone for a customer.

    Requires: MANAGER or ADMIN
    """
    context = get_security_context()
    contact = customer_service.get_contact(
        context.vault,
        customer_id,
        context.events,
        user_id=g.current_user.id,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )
    return jsonify(contact)


@customers_bp.put("/<int:customer_id>/contact")
@require_auth
@require_role(ROLE_ADMIN, ROLE_MANAGER)
@csrf_protect
def update_contact_route(customer_id: int):
    """
    Replace email and/or phone; omitted fields are left unchanged.

    Body: {"email": str?, "phone": str?}
    """
    try:
        data = request.get_json(silent=True) or {}
        email = data.get("email")
        phone = data.get("phone")
        for name, value in (("email", email), ("phone", phone)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string")
        if email is None and phone is None:
            raise ValidationError("email or phone required")

        customer = customer_service.update_contact(
            get_security_context().vault, customer_id, email=email, phone=phone,
        )
        return jsonify({"customer": customer.to_dict()}), 200

    except TrustCoreError:
        raise
    except Exception:
        current_app.logger.exception("Failed to update customer contact")
        return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500
