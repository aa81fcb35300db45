"""
Configuration module for cl-volatility-fee

Contains the Config dataclass that holds every tunable parameter of the
volatility fee controller.

The controller configuration is fixed for the lifetime of a deployment:
Config is frozen and validated once at construction, so a bad value fails
fast at plugin startup instead of producing out-of-range fees later.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any, Mapping

from .errors import InvalidConfiguration
from .fixed_point import MAX_UINT, WORD_BITS


# Plugin option name -> Config field
OPTION_FIELD_MAP: Dict[str, str] = {
    'volfee-db-path': 'db_path',
    'volfee-alpha-numerator': 'alpha_numerator',
    'volfee-alpha-scale': 'alpha_scale',
    'volfee-min-fee': 'min_fee',
    'volfee-max-fee': 'max_fee',
    'volfee-default-fee': 'default_fee',
    'volfee-low-threshold': 'low_threshold',
    'volfee-high-threshold': 'high_threshold',
    'volfee-max-displacement': 'max_displacement',
    'volfee-event-buffer-size': 'event_buffer_size',
    'volfee-event-retention-days': 'event_retention_days',
    'volfee-enable-prometheus': 'enable_prometheus',
    'volfee-prometheus-port': 'prometheus_port',
}

# Type mapping for config fields (for option parsing)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'db_path': str,
    'alpha_numerator': int,
    'alpha_scale': int,
    'min_fee': int,
    'max_fee': int,
    'default_fee': int,
    'low_threshold': int,
    'high_threshold': int,
    'max_displacement': int,
    'event_buffer_size': int,
    'event_retention_days': int,
    'enable_prometheus': bool,
    'prometheus_port': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'alpha_numerator': (1, MAX_UINT),
    'alpha_scale': (1, MAX_UINT),
    'min_fee': (0, 1_000_000),       # 1_000_000 = 100% in hundredths of a bp
    'max_fee': (0, 1_000_000),
    'default_fee': (0, 1_000_000),
    'low_threshold': (0, MAX_UINT),
    'high_threshold': (0, MAX_UINT),
    'max_displacement': (1, MAX_UINT),
    'event_buffer_size': (1, 100_000),
    'event_retention_days': (0, 3650),
    'prometheus_port': (1, 65535),
}


@dataclass(frozen=True)
class Config:
    """
    Configuration container for the volatility fee controller.

    Fees are in hundredths of a basis point (500 = 5bp, 10000 = 100bp).
    Thresholds are in units of squared displacement.

    All values can be set via plugin options at startup and are immutable
    afterwards.
    """

    # Database path ('' = in-memory only, no persistence)
    db_path: str = '~/.lightning/volatility_fee.db'

    # EWMA smoothing weight on the newest observation: alpha_numerator / alpha_scale
    alpha_numerator: int = 3000    # 0.30 -> fast reaction to bursty swaps
    alpha_scale: int = 10000

    # Fee bounds
    min_fee: int = 500             # 5bp
    max_fee: int = 10000           # 100bp
    default_fee: int = 3000        # 30bp, quoted until the first real update

    # Volatility -> fee interpolation window
    low_threshold: int = 100       # at or below: min_fee
    high_threshold: int = 10000    # at or above: max_fee

    # Largest |displacement| accepted per observation (2 * max tick of a v4 pool)
    max_displacement: int = 1_774_544

    # Observability
    event_buffer_size: int = 30    # Recent events kept in memory per entity
    event_retention_days: int = 30 # Event log retention in the database (0 = forever)
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check every cross-field invariant the controller relies on.

        Raises:
            InvalidConfiguration: on the first violated constraint
        """
        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidConfiguration(key, f"expected int, got {type(value).__name__}")
            if not (min_val <= value <= max_val):
                raise InvalidConfiguration(
                    key, f"value {value} out of range [{min_val}, {max_val}]"
                )

        if self.alpha_numerator > self.alpha_scale:
            raise InvalidConfiguration(
                'alpha_numerator',
                f"{self.alpha_numerator} exceeds alpha_scale {self.alpha_scale}"
            )
        if self.max_fee < self.min_fee:
            raise InvalidConfiguration(
                'max_fee', f"max_fee {self.max_fee} < min_fee {self.min_fee}"
            )
        if not (self.min_fee <= self.default_fee <= self.max_fee):
            raise InvalidConfiguration(
                'default_fee',
                f"{self.default_fee} outside [{self.min_fee}, {self.max_fee}]"
            )
        if self.high_threshold <= self.low_threshold:
            raise InvalidConfiguration(
                'high_threshold',
                f"high_threshold {self.high_threshold} <= low_threshold {self.low_threshold}"
            )

        # The estimator never exceeds max_displacement**2, so the largest
        # intermediate is alpha_scale * max_displacement**2.
        worst = self.alpha_scale * self.max_displacement * self.max_displacement
        if worst > MAX_UINT:
            raise InvalidConfiguration(
                'max_displacement',
                f"alpha_scale * max_displacement^2 does not fit in uint{WORD_BITS}"
            )

    @property
    def alpha_complement(self) -> int:
        """Weight kept on the previous estimate (SCALE - ALPHA)."""
        return self.alpha_scale - self.alpha_numerator

    @property
    def max_squared_displacement(self) -> int:
        return self.max_displacement * self.max_displacement

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> 'Config':
        """
        Build a Config from plugin options.

        Unknown option names are ignored; missing ones keep their defaults.

        Raises:
            InvalidConfiguration: if a value cannot be converted or validated
        """
        kwargs: Dict[str, Any] = {}
        for option_name, key in OPTION_FIELD_MAP.items():
            if option_name not in options or options[option_name] is None:
                continue
            kwargs[key] = _convert(key, options[option_name])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    def summary(self) -> str:
        return (f"alpha={self.alpha_numerator}/{self.alpha_scale}, "
                f"fee_range=[{self.min_fee}, {self.max_fee}], "
                f"default_fee={self.default_fee}, "
                f"thresholds=[{self.low_threshold}, {self.high_threshold}]")


def _convert(key: str, value: Any) -> Any:
    """Convert a raw option value to the field's type."""
    field_type = CONFIG_FIELD_TYPES.get(key, str)
    if isinstance(value, field_type) and not (field_type == int and isinstance(value, bool)):
        return value
    try:
        if field_type == bool:
            return str(value).lower() in ('true', '1', 'yes', 'on')
        elif field_type == int:
            return int(value)
        return str(value)
    except (ValueError, TypeError) as e:
        raise InvalidConfiguration(
            key, f"invalid value {value!r} (expected {field_type.__name__}): {e}"
        )
