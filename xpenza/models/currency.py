"""Currencies the app can display amounts in."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Currency(BaseModel):
    """A display currency. Amounts are never converted, only labelled."""
    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=3, max_length=3)
    symbol: str = Field(..., min_length=1, max_length=5)
    name: str


SUPPORTED_CURRENCIES: tuple[Currency, ...] = (
    Currency(code="USD", symbol="$", name="US Dollar"),
    Currency(code="EUR", symbol="€", name="Euro"),
    Currency(code="JPY", symbol="¥", name="Japanese Yen"),
    Currency(code="GBP", symbol="£", name="British Pound"),
    Currency(code="AUD", symbol="A$", name="Australian Dollar"),
    Currency(code="CAD", symbol="C$", name="Canadian Dollar"),
    Currency(code="INR", symbol="₹", name="Indian Rupee"),
    Currency(code="LKR", symbol="Rs", name="Sri Lankan Rupee"),
    Currency(code="BDT", symbol="৳", name="Bangladeshi Taka"),
    Currency(code="PKR", symbol="Rs", name="Pakistani Rupee"),
    Currency(code="IDR", symbol="Rp", name="Indonesian Rupiah"),
    Currency(code="MYR", symbol="RM", name="Malaysian Ringgit"),
)


def find_currency(code: str) -> Optional[Currency]:
    """Look up a supported currency by ISO code (case-insensitive)."""
    code = code.upper()
    for currency in SUPPORTED_CURRENCIES:
        if currency.code == code:
            return currency
    return None
