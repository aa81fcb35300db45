"""
Fee mapping module for cl-volatility-fee

Maps a volatility estimate to a bounded fee with clamped linear
interpolation:

    estimate <= low_threshold   -> min_fee
    estimate >= high_threshold  -> max_fee
    otherwise                   -> linear between the two

Monotonicity holds by construction: Config guarantees min_fee <= max_fee and
low_threshold < high_threshold, and interpolate() is non-decreasing in x for
an ascending output range.
"""

from .config import Config
from .fixed_point import interpolate


# Fee band boundaries as a fraction of the [min_fee, max_fee] span
BAND_LOW_PCT = 20
BAND_MID_PCT = 60


class FeeMapper:
    """Pure volatility -> fee mapping. Holds no state beyond its config."""

    def __init__(self, config: Config):
        self.min_fee = config.min_fee
        self.max_fee = config.max_fee
        self.low_threshold = config.low_threshold
        self.high_threshold = config.high_threshold

    def volatility_to_fee(self, estimate: int) -> int:
        """
        Convert a volatility estimate to a fee.

        Args:
            estimate: Smoothed squared displacement (>= 0)

        Returns:
            Fee in hundredths of a basis point, within [min_fee, max_fee]
        """
        if estimate < 0:
            raise ValueError(f"volatility estimate must be non-negative, got {estimate}")
        if estimate <= self.low_threshold:
            return self.min_fee
        if estimate >= self.high_threshold:
            return self.max_fee
        return interpolate(estimate, self.low_threshold, self.high_threshold,
                           self.min_fee, self.max_fee)

    def fee_band(self, fee: int) -> str:
        """
        Classify a fee by where it sits in [min_fee, max_fee].

        Returns:
            "low" (< 20% of the span), "mid" (< 60%) or "high"
        """
        span = self.max_fee - self.min_fee
        if span <= 0:
            return "low"
        pct = (min(max(fee, self.min_fee), self.max_fee) - self.min_fee) * 100 / span
        if pct < BAND_LOW_PCT:
            return "low"
        elif pct < BAND_MID_PCT:
            return "mid"
        return "high"


def fee_to_bps(fee: int) -> float:
    """Hundredths of a basis point -> basis points (3000 -> 30.0)."""
    return fee / 100
