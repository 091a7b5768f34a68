"""Price arithmetic and pickup codes shared by the listing and order managers."""
import secrets
from decimal import ROUND_HALF_UP, Decimal
from typing import Tuple, Union

PLATFORM_FEE_RATE = Decimal("0.15")
PICKUP_CODE_MIN = 100000
PICKUP_CODE_MAX = 999999

Number = Union[int, float]


def _decimal(value: Number) -> Decimal:
    return Decimal(str(value))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _plain(value: Decimal) -> Number:
    # whole amounts come back as int so 300 * 3 is stored as 900, not 900.0
    return int(value) if value == value.to_integral_value() else float(value)


def discount_percentage(original_price: Number, discounted_price: Number) -> int:
    original = _decimal(original_price)
    if original <= 0:
        return 0
    return round_half_up((original - _decimal(discounted_price)) / original * 100)


def order_totals(unit_price: Number, quantity: int) -> Tuple[Number, int, Number]:
    """Return (total_price, platform_fee, restaurant_earnings) for `quantity` units."""
    total = _decimal(unit_price) * quantity
    fee = round_half_up(total * PLATFORM_FEE_RATE)
    return _plain(total), fee, _plain(total - fee)


def generate_pickup_code() -> str:
    return str(PICKUP_CODE_MIN + secrets.randbelow(PICKUP_CODE_MAX - PICKUP_CODE_MIN + 1))
