"""Turn raw spreadsheet rows into product payloads, or reject them.

Required fields are strict (name, category, a finite price); optional fields
are lenient (stock falls back to 0, description to None). Every function here
is total: malformed cells produce a rejection or a default, never an exception.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

# Column bounds: Numeric(12, 2) price, 32-bit stock, String(255) labels
MAX_PRICE = Decimal("9999999999.99")
MAX_STOCK = 2**31 - 1
MAX_LABEL_LENGTH = 255


def _lookup(row: Mapping[str, Any], key: str) -> Any:
    """Case-insensitive column lookup on trimmed header names."""
    if key in row:
        return row[key]
    for header, value in row.items():
        if isinstance(header, str) and header.strip().lower() == key:
            return value
    return None


def clean_text(value: Any) -> str | None:
    """Trimmed string form of a cell, or None when blank."""
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            # Whole numbers come back from spreadsheets as floats
            value = int(value)
    text = str(value).strip()
    return text or None


def parse_decimal(value: Any) -> Decimal | None:
    """Finite Decimal from a numeric or string cell, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    elif isinstance(value, (int, float)):
        number = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            return None
        try:
            number = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    return number if number.is_finite() else None


def parse_stock(value: Any) -> int:
    """Integer stock level; anything unusable defaults to 0."""
    number = parse_decimal(value)
    if number is None or abs(number) > MAX_STOCK:
        return 0
    return int(number)


def parse_price(value: Any) -> Decimal | None:
    price = parse_decimal(value)
    if price is None or abs(price) > MAX_PRICE:
        return None
    return price


def transform_row(row: Mapping[str, Any]) -> dict[str, Any] | None:
    """Return an insert payload for the row, or None when it must be dropped."""
    name = clean_text(_lookup(row, "name"))
    category = clean_text(_lookup(row, "category"))
    price = parse_price(_lookup(row, "price"))
    if not name or not category or price is None:
        return None

    return {
        "name": name[:MAX_LABEL_LENGTH],
        "category": category[:MAX_LABEL_LENGTH],
        "price": price,
        "stock": parse_stock(_lookup(row, "stock")),
        "description": clean_text(_lookup(row, "description")),
    }
