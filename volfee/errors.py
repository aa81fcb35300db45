"""
Error types for cl-volatility-fee

All controller failures derive from VolatilityFeeError so the plugin layer
can translate them into RPC error responses in one place.
"""

from typing import Any


class VolatilityFeeError(Exception):
    """Base class for controller errors."""


class UnknownEntity(VolatilityFeeError):
    """An operation referenced an entity that was never initialized."""

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(f"Unknown entity: {entity_id!r}")


class AlreadyInitialized(VolatilityFeeError):
    """initialize was called twice for the same entity."""

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(f"Entity already initialized: {entity_id!r}")


class InvalidConfiguration(VolatilityFeeError):
    """Configuration rejected at construction time."""

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid configuration for {field_name}: {reason}")


class ArithmeticOverflow(VolatilityFeeError):
    """
    A bounded integer operation left its documented range.

    Raised for displacements larger than max_displacement and for checked
    fixed-point operations that would not fit in the emulated word.
    """


class StaleObservation(VolatilityFeeError):
    """A staged observation was committed after its base record changed."""

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(
            f"Staged observation for {entity_id!r} is stale; the record was "
            f"updated after it was staged"
        )
