"""
Controller Registry module for cl-volatility-fee

Owns exactly one ControllerState per tracked entity and exposes the
controller lifecycle:

- initialize_entity: create the record (baseline position, default fee)
- quote_fee / get_metrics: read-only lookups
- observe: bootstrap-or-update, re-map the fee, commit

Updates are all-or-nothing. observe() is stage() followed by commit(); an
engine that can still abort the surrounding transaction stages first and
either commits or rolls back once the outcome is known. Until a staged
update is committed, the stored record is untouched.

Thread Safety:
    Each entity has its own lock; all writes for an entity are serialized
    under it. Records are immutable, so readers never see a torn update.
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Tuple, TYPE_CHECKING

from .config import Config
from .errors import AlreadyInitialized, StaleObservation, UnknownEntity
from .events import ObservationRecord
from .fee_mapper import FeeMapper
from .volatility import ControllerState, VolatilityEstimator

if TYPE_CHECKING:
    from .database import Database


@dataclass(frozen=True)
class ObservationResult:
    """
    Outcome of a committed observation.

    Attributes:
        entity_id: Entity that was observed
        estimate: Volatility estimate after the observation
        fee: Fee quoted for the next transaction
        displacement: Signed displacement from the previous position
        bootstrap: True if this was the first observation (estimate untouched)
        state: The committed record
    """
    entity_id: Hashable
    estimate: int
    fee: int
    displacement: int
    bootstrap: bool
    state: ControllerState

    def to_record(self) -> ObservationRecord:
        return ObservationRecord(
            entity_id=self.entity_id,
            estimate=self.estimate,
            fee=self.fee,
            displacement=self.displacement,
            bootstrap=self.bootstrap,
            timestamp=self.state.last_update_time,
        )


@dataclass
class PendingObservation:
    """
    A computed but not yet committed observation.

    Holds the record it was computed from so that commit() can detect a
    concurrent update and refuse to apply a stale result.
    """
    entity_id: Hashable
    base: ControllerState
    staged: ControllerState
    displacement: int
    bootstrap: bool
    settled: bool = False

    def result(self) -> ObservationResult:
        return ObservationResult(
            entity_id=self.entity_id,
            estimate=self.staged.volatility_estimate,
            fee=self.staged.current_fee,
            displacement=self.displacement,
            bootstrap=self.bootstrap,
            state=self.staged,
        )


class EntityTransaction:
    """Handle yielded by ControllerRegistry.transaction()."""

    def __init__(self, registry: 'ControllerRegistry', entity_id: Hashable):
        self.registry = registry
        self.entity_id = entity_id
        self.pending: Optional[PendingObservation] = None

    def observe(self, new_position: int) -> ObservationResult:
        """Stage an observation; it is committed when the block exits cleanly."""
        if self.pending is not None:
            raise RuntimeError(
                f"Transaction for {self.entity_id!r} already staged an observation"
            )
        self.pending = self.registry.stage(self.entity_id, new_position)
        return self.pending.result()


class ControllerRegistry:
    """
    Registry of per-entity controller records.

    When a Database is attached, every committed record is written through
    to it inside the same all-or-nothing step as the in-memory update.
    """

    def __init__(self, config: Config, plugin, database: Optional['Database'] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the ControllerRegistry.

        Args:
            config: Immutable controller configuration
            plugin: Reference to the pyln Plugin for logging
            database: Optional Database for write-through persistence
            clock: Time source for last_update_time (injectable for tests)
        """
        self.config = config
        self.plugin = plugin
        self.database = database
        self.clock = clock

        self.estimator = VolatilityEstimator(config)
        self.mapper = FeeMapper(config)

        self._states: Dict[Hashable, ControllerState] = {}
        self._entity_locks: Dict[Hashable, threading.RLock] = {}
        self._lock = threading.Lock()

    def _now(self) -> int:
        return int(self.clock())

    # =========================================================================
    # Hydration
    # =========================================================================

    def load_from_database(self) -> int:
        """
        Hydrate the in-memory map from the attached database.

        Returns:
            Number of records loaded
        """
        if self.database is None:
            return 0
        states = self.database.get_all_controller_states()
        with self._lock:
            for entity_id, state in states.items():
                self._states[entity_id] = state
                self._entity_locks.setdefault(entity_id, threading.RLock())
        self.plugin.log(f"ControllerRegistry: Loaded {len(states)} controller records")
        return len(states)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize_entity(self, entity_id: Hashable, baseline_position: int) -> ControllerState:
        """
        Create the controller record for a new entity.

        Raises:
            AlreadyInitialized: if a record for entity_id exists
        """
        with self._lock:
            if entity_id in self._states:
                raise AlreadyInitialized(entity_id)

            state = ControllerState(
                last_position=int(baseline_position),
                volatility_estimate=0,
                current_fee=self.config.default_fee,
                last_update_time=self._now(),
                initialized=False,
                observation_count=0,
            )

            if self.database is not None:
                try:
                    with self.database.transaction() as conn:
                        self.database.insert_controller_state(entity_id, state, conn=conn)
                except sqlite3.IntegrityError:
                    # Persisted by an earlier run but not hydrated into memory
                    raise AlreadyInitialized(entity_id)

            self._states[entity_id] = state
            self._entity_locks[entity_id] = threading.RLock()

        self.plugin.log(
            f"ControllerRegistry: Initialized {entity_id} at position {baseline_position} "
            f"(fee={state.current_fee})"
        )
        return state

    def has_entity(self, entity_id: Hashable) -> bool:
        return entity_id in self._states

    def entity_ids(self) -> List[Hashable]:
        with self._lock:
            return list(self._states.keys())

    def get_state(self, entity_id: Hashable) -> ControllerState:
        """
        Current record for an entity (immutable snapshot).

        Raises:
            UnknownEntity: if the entity was never initialized
        """
        state = self._states.get(entity_id)
        if state is None:
            raise UnknownEntity(entity_id)
        return state

    def quote_fee(self, entity_id: Hashable) -> int:
        """Fee to apply to the next transaction. Read-only."""
        return self.get_state(entity_id).current_fee

    def get_metrics(self, entity_id: Hashable) -> Tuple[int, int, int, bool]:
        """(last_position, volatility_estimate, current_fee, initialized). Read-only."""
        return self.get_state(entity_id).metrics()

    def _entity_lock(self, entity_id: Hashable) -> threading.RLock:
        lock = self._entity_locks.get(entity_id)
        if lock is None:
            raise UnknownEntity(entity_id)
        return lock

    # =========================================================================
    # Observation: stage / commit / rollback
    # =========================================================================

    def stage(self, entity_id: Hashable, new_position: int) -> PendingObservation:
        """
        Compute the record an observation would produce, without storing it.

        Raises:
            UnknownEntity: if the entity was never initialized
            ArithmeticOverflow: if the displacement exceeds the configured bound
        """
        base = self.get_state(entity_id)
        new_position = int(new_position)
        now = self._now()

        if not base.initialized:
            staged = self.estimator.bootstrap(base, new_position, now)
            return PendingObservation(
                entity_id=entity_id,
                base=base,
                staged=staged,
                displacement=new_position - base.last_position,
                bootstrap=True,
            )

        estimate, displacement = self.estimator.update(base, new_position)
        fee = self.mapper.volatility_to_fee(estimate)
        staged = replace(
            base,
            last_position=new_position,
            volatility_estimate=estimate,
            current_fee=fee,
            last_update_time=max(base.last_update_time, now),
            observation_count=base.observation_count + 1,
        )
        return PendingObservation(
            entity_id=entity_id,
            base=base,
            staged=staged,
            displacement=displacement,
            bootstrap=False,
        )

    def commit(self, pending: PendingObservation) -> ObservationResult:
        """
        Apply a staged observation.

        Raises:
            StaleObservation: if the record changed since the observation was staged
            ValueError: if the pending observation was already committed or rolled back
        """
        with self._entity_lock(pending.entity_id):
            return self._commit_locked(pending)

    def _commit_locked(self, pending: PendingObservation) -> ObservationResult:
        if pending.settled:
            raise ValueError(f"Observation for {pending.entity_id!r} already settled")

        current = self._states.get(pending.entity_id)
        if current is None:
            raise UnknownEntity(pending.entity_id)
        if current is not pending.base:
            raise StaleObservation(pending.entity_id)

        if self.database is not None:
            with self.database.transaction() as conn:
                self.database.save_controller_state(pending.entity_id, pending.staged, conn=conn)

        self._states[pending.entity_id] = pending.staged
        pending.settled = True

        if pending.bootstrap:
            self.plugin.log(
                f"ControllerRegistry: {pending.entity_id} bootstrapped at position "
                f"{pending.staged.last_position}",
                level='debug'
            )
        elif pending.staged.current_fee != pending.base.current_fee:
            self.plugin.log(
                f"ControllerRegistry: {pending.entity_id} fee "
                f"{pending.base.current_fee} -> {pending.staged.current_fee} "
                f"(estimate={pending.staged.volatility_estimate}, "
                f"displacement={pending.displacement})",
                level='debug'
            )
        return pending.result()

    def rollback(self, pending: PendingObservation) -> None:
        """Discard a staged observation. The stored record is left as it was."""
        if pending.settled:
            return
        pending.settled = True
        self.plugin.log(
            f"ControllerRegistry: Rolled back staged observation for {pending.entity_id}",
            level='debug'
        )

    def observe(self, entity_id: Hashable, new_position: int) -> ObservationResult:
        """
        Record a new position and recompute the fee.

        Bootstrap on the first call after initialize_entity: only the position
        is recorded and the default fee is kept.

        Raises:
            UnknownEntity: if the entity was never initialized
            ArithmeticOverflow: if the displacement exceeds the configured bound
        """
        with self._entity_lock(entity_id):
            pending = self.stage(entity_id, new_position)
            return self._commit_locked(pending)

    @contextmanager
    def transaction(self, entity_id: Hashable) -> Iterator[EntityTransaction]:
        """
        Hold the entity for one engine transaction.

        Usage:
            with registry.transaction(pool_id) as txn:
                result = txn.observe(new_tick)
                engine.finish_swap()   # raising here rolls the update back

        The staged observation is committed when the block exits normally
        and discarded if it raises.
        """
        with self._entity_lock(entity_id):
            txn = EntityTransaction(self, entity_id)
            try:
                yield txn
            except Exception:
                if txn.pending is not None:
                    self.rollback(txn.pending)
                raise
            if txn.pending is not None:
                self._commit_locked(txn.pending)
