"""
Volatility estimator module for cl-volatility-fee

Fixed-point EWMA of squared position displacement.

Algorithm (per observation):
1. displacement = new_position - last_position
2. squared      = displacement * displacement
3. estimate     = (ALPHA * squared + (SCALE - ALPHA) * estimate) / SCALE

The estimator is strictly recursive: no history is kept, and the influence
of an old observation decays geometrically by (SCALE - ALPHA) / SCALE per
new observation. After k zero-displacement observations the estimate is
E * ((SCALE - ALPHA) / SCALE)^k, up to integer truncation.

The first observation after an entity is created is a bootstrap: it only
records the position, because there is no prior position to measure a
displacement against.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Tuple

from .config import Config
from .errors import ArithmeticOverflow
from .fixed_point import checked_add, checked_mul, scaled_mul_div


@dataclass(frozen=True)
class ControllerState:
    """
    Controller record for one entity.

    Attributes:
        last_position: Most recent observed position (e.g. pool tick)
        volatility_estimate: Smoothed squared displacement, >= 0
        current_fee: Fee quoted for the next transaction
        last_update_time: Unix timestamp of the last write (informational)
        initialized: False until the first observation has been recorded
        observation_count: Committed observations, bootstrap included
    """
    last_position: int
    volatility_estimate: int = 0
    current_fee: int = 0
    last_update_time: int = 0
    initialized: bool = False
    observation_count: int = 0

    def metrics(self) -> Tuple[int, int, int, bool]:
        """(last_position, volatility_estimate, current_fee, initialized)"""
        return (self.last_position, self.volatility_estimate,
                self.current_fee, self.initialized)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_position": self.last_position,
            "volatility_estimate": self.volatility_estimate,
            "current_fee": self.current_fee,
            "last_update_time": self.last_update_time,
            "initialized": self.initialized,
            "observation_count": self.observation_count,
        }


class VolatilityEstimator:
    """
    EWMA volatility estimator over integer positions.

    Stateless apart from its configuration: every method takes the entity
    record and returns new values, so a failed computation can never leave
    a half-updated record behind.
    """

    def __init__(self, config: Config):
        self.alpha = config.alpha_numerator
        self.scale = config.alpha_scale
        self.complement = config.alpha_complement
        self.max_displacement = config.max_displacement

    def displacement(self, state: ControllerState, new_position: int) -> int:
        """
        Signed displacement from the last recorded position.

        Raises:
            ArithmeticOverflow: if |displacement| exceeds max_displacement
        """
        delta = new_position - state.last_position
        if abs(delta) > self.max_displacement:
            raise ArithmeticOverflow(
                f"displacement {delta} exceeds bound {self.max_displacement}"
            )
        return delta

    def update(self, state: ControllerState, new_position: int) -> Tuple[int, int]:
        """
        Fold one observation into the estimate.

        Args:
            state: Current record (not modified)
            new_position: Newly observed position

        Returns:
            (updated_estimate, displacement)

        Raises:
            ArithmeticOverflow: on a displacement beyond the configured bound
        """
        delta = self.displacement(state, new_position)
        squared = checked_mul(abs(delta), abs(delta))
        weighted = checked_add(
            checked_mul(self.alpha, squared),
            checked_mul(self.complement, state.volatility_estimate),
        )
        return weighted // self.scale, delta

    def bootstrap(self, state: ControllerState, new_position: int,
                  now: int) -> ControllerState:
        """
        First observation after creation: record the position only.

        The estimate stays at zero and the fee is left at its default.
        """
        return replace(
            state,
            last_position=new_position,
            initialized=True,
            last_update_time=max(state.last_update_time, now),
            observation_count=state.observation_count + 1,
        )

    def decay(self, estimate: int, k: int) -> int:
        """Estimate after k zero-displacement observations (exact integer replay)."""
        if k < 0:
            raise ValueError(f"k must be non-negative, got {k}")
        for _ in range(k):
            if estimate == 0:
                break
            estimate = scaled_mul_div(self.complement, estimate, self.scale)
        return estimate

    def observations_to_decay(self, start: int, target: int) -> int:
        """
        Smallest k such that decay(start, k) <= target.

        Callers that need a guaranteed decay floor (e.g. "volatility back
        under the low threshold") use this to know how many quiet
        observations it takes.
        """
        if target < 0:
            raise ValueError(f"target must be non-negative, got {target}")
        if start <= target:
            return 0
        if self.complement == 0:
            # alpha == scale: estimate tracks only the newest observation
            return 1
        k = 0
        estimate = start
        while estimate > target:
            estimate = scaled_mul_div(self.complement, estimate, self.scale)
            k += 1
        return k
