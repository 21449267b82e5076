"""
Asset Module

Describes the single custodied asset and converts between human-readable
token amounts and integer base units. NEVER uses float for amounts.
"""

from decimal import Decimal, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
import re

# Base-unit amounts reach 10**25 and beyond
getcontext().prec = 60


@dataclass(frozen=True)
class Asset:
    """Fungible asset with a fixed number of decimal places"""
    symbol: str
    decimals: int = 18

    def __post_init__(self):
        if self.decimals < 0:
            raise ValueError("Asset decimals cannot be negative")

    @property
    def unit(self) -> int:
        """Base units in one whole token"""
        return 10 ** self.decimals

    def to_base_units(self, value: Union[str, int, Decimal]) -> int:
        """
        Convert a token amount to integer base units

        Args:
            value: Token amount, e.g. "1000000" or "0.5"

        Returns:
            Integer amount of base units

        Raises:
            ValueError: If the amount has more precision than the asset allows
        """
        if isinstance(value, int):
            return value * self.unit

        amount = decimal_from_string(value) if isinstance(value, str) else value
        scaled = amount * self.unit
        if scaled != scaled.to_integral_value():
            raise ValueError(
                f"{value} has more than {self.decimals} decimal places for {self.symbol}"
            )
        return int(scaled)

    def format_amount(self, base_units: int) -> str:
        """Format base units for display"""
        whole = Decimal(base_units) / Decimal(self.unit)
        if self.decimals == 0:
            return f"{self.symbol} {whole:,.0f}"
        return f"{self.symbol} {whole:,.{self.decimals}f}"


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, dropping symbols and thousands separators

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    clean_value = re.sub(r'[^\d.\-+]', '', value.strip())

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def parse_base_units(value: Union[str, int]) -> int:
    """Parse an integer amount of base units, as sent over the API"""
    if isinstance(value, bool):
        raise ValueError("Amount must be an integer")
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not re.fullmatch(r'\s*-?\d+\s*', value):
        raise ValueError(f"Cannot parse '{value}' as an integer amount")
    return int(value)
