"""
Fixed-point integer helpers for cl-volatility-fee

Every computation in the controller is integer-only. Python integers never
overflow, so the controller word width (unsigned 256-bit) is
emulated explicitly: checked operations raise ArithmeticOverflow instead of
growing without bound or wrapping around.
"""

from .errors import ArithmeticOverflow, InvalidConfiguration


WORD_BITS = 256
MAX_UINT = (1 << WORD_BITS) - 1


def _check_word(value: int, op: str) -> int:
    if value < 0 or value > MAX_UINT:
        raise ArithmeticOverflow(
            f"{op} result {value} outside uint{WORD_BITS} range"
        )
    return value


def checked_add(a: int, b: int) -> int:
    """Add two unsigned words, raising ArithmeticOverflow on overflow."""
    return _check_word(a + b, "add")


def checked_mul(a: int, b: int) -> int:
    """Multiply two unsigned words, raising ArithmeticOverflow on overflow."""
    return _check_word(a * b, "mul")


def div_trunc(a: int, b: int) -> int:
    """
    Integer division truncating toward zero.

    Python's // floors, which differs for negative quotients. Fee
    interpolation can produce a negative numerator when the output range
    is descending, so truncation has to be done explicitly.
    """
    if b == 0:
        raise ZeroDivisionError("div_trunc by zero")
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def scaled_mul_div(a: int, b: int, scale: int) -> int:
    """
    Compute a * b / scale on unsigned words.

    The intermediate product is checked against the word width; callers
    keep operands bounded (see Config.max_displacement) so this never
    raises in normal operation.

    Raises:
        InvalidConfiguration: if scale is not positive
        ArithmeticOverflow: if a or b is negative or a * b overflows
    """
    if scale <= 0:
        raise InvalidConfiguration('scale', f"must be positive, got {scale}")
    if a < 0 or b < 0:
        raise ArithmeticOverflow(f"scaled_mul_div expects unsigned operands, got {a}, {b}")
    return checked_mul(a, b) // scale


def interpolate(x: int, x_low: int, x_high: int, y_low: int, y_high: int) -> int:
    """
    Clamped linear interpolation on integers.

    Returns y_low at or below x_low, y_high at or above x_high, and
    y_low + (y_high - y_low) * (x - x_low) / (x_high - x_low) in between,
    truncated toward zero.

    Raises:
        InvalidConfiguration: if x_high == x_low
    """
    if x_high == x_low:
        raise InvalidConfiguration(
            'x_high', f"interpolation range is empty (x_low == x_high == {x_low})"
        )
    if x <= x_low:
        return y_low
    if x >= x_high:
        return y_high
    return y_low + div_trunc((y_high - y_low) * (x - x_low), x_high - x_low)
