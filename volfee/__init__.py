"""
cl-volatility-fee core package

This package contains the core modules for the volatility fee controller:
- fixed_point: Integer-only scaled arithmetic and clamped interpolation
- volatility: Fixed-point EWMA volatility estimator and controller record
- fee_mapper: Volatility -> fee mapping
- registry: Per-entity controller records with staged commit/rollback
- adapter: initialize / pre-transaction / post-transaction engine contract
- events: Observability records and listener fan-out
- config: Configuration and constants
- database: SQLite storage layer
- metrics: Prometheus exporter
"""

from .errors import (
    VolatilityFeeError,
    UnknownEntity,
    AlreadyInitialized,
    InvalidConfiguration,
    ArithmeticOverflow,
    StaleObservation,
)
from .config import Config
from .fixed_point import scaled_mul_div, interpolate
from .volatility import ControllerState, VolatilityEstimator
from .fee_mapper import FeeMapper, fee_to_bps
from .events import ObservationRecord, EventDispatcher
from .registry import ControllerRegistry, ObservationResult, PendingObservation
from .adapter import IntegrationAdapter, FeeQuote
from .database import Database
from .metrics import PrometheusExporter, MetricNames, MetricsListener

__all__ = [
    'VolatilityFeeError',
    'UnknownEntity',
    'AlreadyInitialized',
    'InvalidConfiguration',
    'ArithmeticOverflow',
    'StaleObservation',
    'Config',
    'scaled_mul_div',
    'interpolate',
    'ControllerState',
    'VolatilityEstimator',
    'FeeMapper',
    'fee_to_bps',
    'ObservationRecord',
    'EventDispatcher',
    'ControllerRegistry',
    'ObservationResult',
    'PendingObservation',
    'IntegrationAdapter',
    'FeeQuote',
    'Database',
    'PrometheusExporter',
    'MetricNames',
    'MetricsListener',
]
