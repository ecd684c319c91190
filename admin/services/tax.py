from __future__ import annotations
from typing import Optional, Tuple

TAX_RATES_BY_COUNTRY = {
    "DE": 0.19,
    "AT": 0.20,
    "CH": 0.0,
}

INCLUSIVE = "inclusive"
EXCLUSIVE = "exclusive"

# catalog-specific: these settlement currencies are priced net of tax
EXCLUSIVE_BY_DEFAULT_CURRENCIES = {"USD", "CAD"}


def tax_rate_for(country: Optional[str]) -> float:
    if not country:
        return 0.0
    return TAX_RATES_BY_COUNTRY.get(country.upper(), 0.0)


def normalize_tax_behavior(tax_behavior: Optional[str], currency: Optional[str]) -> str:
    """
    Explicit inclusive/exclusive wins. "unspecified" (or missing) is treated as
    inclusive, except for the currencies in EXCLUSIVE_BY_DEFAULT_CURRENCIES.
    """
    if tax_behavior in (INCLUSIVE, EXCLUSIVE):
        return tax_behavior
    if (currency or "").upper() in EXCLUSIVE_BY_DEFAULT_CURRENCIES:
        return EXCLUSIVE
    return INCLUSIVE


def split_gross_net(amount: int, rate: float, tax_behavior: Optional[str], currency: Optional[str]) -> Tuple[float, float]:
    """Returns (gross, net) in minor units for one unit price."""
    if normalize_tax_behavior(tax_behavior, currency) == INCLUSIVE:
        gross = float(amount)
        net = gross / (1 + rate) if rate > 0 else gross
        return gross, net
    net = float(amount)
    return net * (1 + rate), net


def invoice_net(invoice: dict) -> int:
    """Net revenue of an invoice in minor units, preferring the provider's tax-exclusive figures."""
    total = invoice.get("total") or 0
    if invoice.get("total_excluding_tax") is not None:
        return invoice["total_excluding_tax"]
    if invoice.get("subtotal_excluding_tax") is not None:
        return invoice["subtotal_excluding_tax"]
    if invoice.get("tax") is not None:
        return total - invoice["tax"]
    taxes = invoice.get("total_taxes")
    if taxes:
        return total - sum(t.get("amount") or 0 for t in taxes)
    return total


def to_major(minor: float) -> float:
    return round(minor / 100, 2)
