from decimal import Decimal, ROUND_DOWN


def to_base_units(amount, decimals: int) -> int:
    """Human token amount to integer base units, truncating past the token's precision."""
    quantum = Decimal(1).scaleb(-decimals)
    truncated = Decimal(str(amount)).quantize(quantum, rounding=ROUND_DOWN)
    return int(truncated.scaleb(decimals))


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(int(value)).scaleb(-decimals)
