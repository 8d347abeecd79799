# Overview: Tax rate lookup and tax arithmetic in basis points.

"""
Tax rates are expressed in basis points (825 = 8.25%) and applied to cent
amounts with round-half-up integer arithmetic, so no float ever touches
money.

The ledger only talks to the TaxRateProvider interface; StoreTaxRateProvider
is the default implementation backed by stores.tax_rate_bps.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import Store


BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class TaxRates:
    base_rate_bps: int
    restricted_surtax_bps: int = 0


def apply_bps(amount_cents: int, rate_bps: int) -> int:
    """amount x rate, rounded half up to the cent."""
    if amount_cents <= 0 or rate_bps <= 0:
        return 0
    return (amount_cents * rate_bps + BPS_DENOMINATOR // 2) // BPS_DENOMINATOR


def compute_tax(subtotal_cents: int, restricted_subtotal_cents: int, rates: TaxRates) -> dict:
    """
    Base tax on the full subtotal plus surtax on the age-restricted portion.

    Returns the breakdown stored on the transaction; "tax_cents" is the total.
    """
    base_tax = apply_bps(subtotal_cents, rates.base_rate_bps)
    surtax = apply_bps(restricted_subtotal_cents, rates.restricted_surtax_bps)
    return {
        "base_rate_bps": rates.base_rate_bps,
        "base_tax_cents": base_tax,
        "restricted_surtax_bps": rates.restricted_surtax_bps,
        "restricted_subtotal_cents": restricted_subtotal_cents,
        "restricted_surtax_cents": surtax,
        "tax_cents": base_tax + surtax,
    }


class TaxRateProvider:
    def rates_for(self, store_id: int | None) -> TaxRates:
        raise NotImplementedError


class FixedTaxRateProvider(TaxRateProvider):
    def __init__(self, rates: TaxRates):
        self.rates = rates

    def rates_for(self, store_id: int | None) -> TaxRates:
        return self.rates


class StoreTaxRateProvider(TaxRateProvider):
    """Per-store base rate with a configured default and a global surtax."""

    def __init__(self, default_rate_bps: int, restricted_surtax_bps: int):
        self.default_rate_bps = default_rate_bps
        self.restricted_surtax_bps = restricted_surtax_bps

    def rates_for(self, store_id: int | None) -> TaxRates:
        rate = self.default_rate_bps
        if store_id is not None:
            store = db.session.get(Store, store_id)
            if store is not None and store.tax_rate_bps is not None:
                rate = store.tax_rate_bps
        return TaxRates(base_rate_bps=rate, restricted_surtax_bps=self.restricted_surtax_bps)
