# Overview: Customer records with field-level PII encryption.

"""
Customer PII is encrypted at rest with CryptoVault.

The AAD context is the column name, so an email blob copied into the phone
column fails to decrypt instead of silently reading as a phone number.
"""

from __future__ import annotations

from ..extensions import db
from ..models import Customer
from ..errors import DecryptionError, InvalidCustomer, ValidationError
from . import security_events as events
from .crypto_vault import CryptoVault
from .security_events import SecurityEventSink


EMAIL_CONTEXT = "customer-email"
PHONE_CONTEXT = "customer-phone"


def create_customer(
    vault: CryptoVault,
    first_name: str,
    last_name: str,
    email: str | None = None,
    phone: str | None = None,
) -> Customer:
    if not first_name or not last_name:
        raise ValidationError("first_name and last_name required")

    customer = Customer(
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        email_encrypted=vault.encrypt_field(email, EMAIL_CONTEXT),
        phone_encrypted=vault.encrypt_field(phone, PHONE_CONTEXT),
        is_active=True,
    )
    db.session.add(customer)
    db.session.commit()
    return customer


def get_contact(
    vault: CryptoVault,
    customer_id: int,
    event_sink: SecurityEventSink,
    *,
    user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict:
    """
    Decrypted contact details.

    A blob that fails authentication records DECRYPTION_FAILED and raises
    DecryptionError.
    """
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise InvalidCustomer("Customer not found", details={"customer_id": customer_id})

    column = "email"
    try:
        email = vault.decrypt_field(customer.email_encrypted, EMAIL_CONTEXT)
        column = "phone"
        phone = vault.decrypt_field(customer.phone_encrypted, PHONE_CONTEXT)
    except DecryptionError as exc:
        events.record_safely(
            event_sink,
            events.DECRYPTION_FAILED,
            success=False,
            user_id=user_id,
            resource=f"customer:{customer.id}",
            reason=exc.message,
            details={"customer_id": customer.id, "column": column},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise

    return {"customer_id": customer.id, "email": email, "phone": phone}


def update_contact(
    vault: CryptoVault,
    customer_id: int,
    email: str | None = None,
    phone: str | None = None,
) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise InvalidCustomer("Customer not found", details={"customer_id": customer_id})

    if email is not None:
        customer.email_encrypted = vault.encrypt_field(email, EMAIL_CONTEXT)
    if phone is not None:
        customer.phone_encrypted = vault.encrypt_field(phone, PHONE_CONTEXT)
    db.session.commit()
    return customer
