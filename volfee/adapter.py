"""
Integration adapter for cl-volatility-fee

The boundary between an execution engine and the controller. The engine
calls three lifecycle points:

1. initialize(entity_id, baseline_position)   - entity created
2. pre_transaction(entity_id) -> FeeQuote      - fee for the next transaction
3. post_transaction(entity_id, outcome)        - transaction executed

The adapter translates engine-native values (plain ints or outcome dicts
carrying a tick/position) into controller inputs, enforces the
displacement bound before any state is touched, and publishes one
ObservationRecord per committed observation.
"""

from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Mapping, Optional

from .errors import ArithmeticOverflow, UnknownEntity
from .events import EventDispatcher, ObservationRecord
from .registry import ControllerRegistry, PendingObservation
from .volatility import ControllerState


# Keys checked, in order, when the engine reports an outcome mapping
POSITION_KEYS = ('tick', 'position', 'new_position')


@dataclass(frozen=True)
class FeeQuote:
    """
    Fee handed to the engine before a transaction.

    use_engine_default is True when the entity has no controller record;
    the engine should then apply its own default instead of failing.
    """
    entity_id: Hashable
    fee: Optional[int]
    use_engine_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "fee": self.fee,
            "fee_bps": self.fee / 100 if self.fee is not None else None,
            "use_engine_default": self.use_engine_default,
        }


class IntegrationAdapter:
    """Three-point contract between an execution engine and the registry."""

    def __init__(self, registry: ControllerRegistry, dispatcher: EventDispatcher, plugin):
        """
        Args:
            registry: ControllerRegistry owning the per-entity records
            dispatcher: EventDispatcher that fans out observability records
            plugin: Reference to the pyln Plugin for logging
        """
        self.registry = registry
        self.dispatcher = dispatcher
        self.plugin = plugin
        self.max_displacement = registry.config.max_displacement

    # =========================================================================
    # Engine lifecycle points
    # =========================================================================

    def initialize(self, entity_id: Hashable, baseline_position: Any) -> ControllerState:
        """Entity-initialization event: create the controller record."""
        return self.registry.initialize_entity(entity_id, self.extract_position(baseline_position))

    def pre_transaction(self, entity_id: Hashable) -> FeeQuote:
        """
        Pre-transaction event: quote the fee for the transaction about to run.

        Never fails for an unknown entity; the quote then tells the engine
        to use its own default.
        """
        try:
            return FeeQuote(entity_id=entity_id, fee=self.registry.quote_fee(entity_id))
        except UnknownEntity:
            self.plugin.log(
                f"IntegrationAdapter: No controller record for {entity_id}, "
                f"engine default applies",
                level='debug'
            )
            return FeeQuote(entity_id=entity_id, fee=None, use_engine_default=True)

    def post_transaction(self, entity_id: Hashable, outcome: Any) -> ObservationRecord:
        """
        Post-transaction event: observe the new position and publish the result.

        Raises:
            UnknownEntity: if the entity was never initialized
            ArithmeticOverflow: if the displacement exceeds max_displacement
            ValueError: if no position can be extracted from the outcome
        """
        position = self.extract_position(outcome)
        self._check_displacement(entity_id, position)
        result = self.registry.observe(entity_id, position)
        record = result.to_record()
        self.dispatcher.dispatch(record)
        return record

    def post_transaction_staged(self, entity_id: Hashable, outcome: Any) -> PendingObservation:
        """
        Stage a post-transaction observation without committing it.

        For engines that learn whether the transaction succeeded only after
        reporting its outcome. Finish with settle().
        """
        position = self.extract_position(outcome)
        self._check_displacement(entity_id, position)
        return self.registry.stage(entity_id, position)

    def settle(self, pending: PendingObservation, success: bool) -> Optional[ObservationRecord]:
        """
        Commit a staged observation if the transaction succeeded, else roll it back.

        Returns:
            The published record on commit, None on rollback
        """
        if not success:
            self.registry.rollback(pending)
            return None
        result = self.registry.commit(pending)
        record = result.to_record()
        self.dispatcher.dispatch(record)
        return record

    # =========================================================================
    # Read-only queries
    # =========================================================================

    def get_metrics(self, entity_id: Hashable) -> Dict[str, Any]:
        """Dashboard view of one entity. Does not mutate state."""
        state = self.registry.get_state(entity_id)
        last_position, estimate, fee, initialized = state.metrics()
        return {
            "entity_id": entity_id,
            "last_position": last_position,
            "volatility_estimate": estimate,
            "current_fee": fee,
            "current_fee_bps": fee / 100,
            "fee_band": self.registry.mapper.fee_band(fee),
            "initialized": initialized,
            "last_update_time": state.last_update_time,
            "observation_count": state.observation_count,
        }

    def recent_events(self, entity_id: Optional[Hashable] = None,
                      limit: int = 30) -> List[Dict[str, Any]]:
        """Recent observability records, newest first."""
        database = self.registry.database
        if database is not None:
            return database.get_recent_events(
                limit=limit, entity_id=str(entity_id) if entity_id is not None else None
            )
        return [r.to_dict() for r in self.dispatcher.recent(entity_id, limit)]

    # =========================================================================
    # Engine value translation
    # =========================================================================

    @staticmethod
    def extract_position(outcome: Any) -> int:
        """
        Pull an integer position out of an engine value.

        Accepts an int, a numeric string, or a mapping with one of
        POSITION_KEYS.

        Raises:
            ValueError: if no integer position can be found
        """
        value = outcome
        if isinstance(outcome, Mapping):
            for key in POSITION_KEYS:
                if key in outcome:
                    value = outcome[key]
                    break
            else:
                raise ValueError(
                    f"Outcome has no position field (expected one of {', '.join(POSITION_KEYS)})"
                )

        if isinstance(value, bool):
            raise ValueError(f"Position must be an integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value, 10)
            except ValueError:
                pass
        raise ValueError(f"Position must be an integer, got {value!r}")

    def _check_displacement(self, entity_id: Hashable, position: int) -> None:
        """Reject a position whose displacement exceeds the configured bound."""
        last_position = self.registry.get_state(entity_id).last_position
        displacement = position - last_position
        if abs(displacement) > self.max_displacement:
            self.plugin.log(
                f"IntegrationAdapter: Rejected observation for {entity_id}: "
                f"|displacement| {abs(displacement)} > {self.max_displacement}",
                level='warn'
            )
            raise ArithmeticOverflow(
                f"displacement {displacement} for {entity_id!r} exceeds bound "
                f"{self.max_displacement}"
            )
