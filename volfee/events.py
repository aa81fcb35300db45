"""
Observability events for cl-volatility-fee

Every committed observation produces one ObservationRecord. The core only
returns the record; fan-out to listeners (database event log, Prometheus
gauges, plugin notifications) happens here so the controller stays free of
side effects in tests.
"""

import time
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional, Tuple


@dataclass(frozen=True)
class ObservationRecord:
    """
    Result of one observe call, as published to observers.

    Attributes:
        entity_id: Entity the observation belongs to
        estimate: Volatility estimate after the observation
        fee: Fee quoted for the next transaction
        displacement: Raw signed displacement that was observed
        bootstrap: True for the first observation after creation
        timestamp: Unix timestamp when the record was committed
    """
    entity_id: Hashable
    estimate: int
    fee: int
    displacement: int
    bootstrap: bool = False
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "estimate": self.estimate,
            "fee": self.fee,
            "fee_bps": self.fee / 100,
            "displacement": self.displacement,
            "bootstrap": self.bootstrap,
            "timestamp": self.timestamp,
        }


class EventDispatcher:
    """
    Fan-out of ObservationRecords to registered listeners.

    Listener failures are logged and swallowed: a broken dashboard feed
    must never fail the transaction that produced the event.

    Also keeps a bounded in-memory buffer of recent records per entity,
    which backs the event query when no database is attached.
    """

    def __init__(self, plugin, buffer_size: int = 30):
        """
        Args:
            plugin: Reference to the pyln Plugin for logging
            buffer_size: Recent records retained per entity
        """
        self.plugin = plugin
        self.buffer_size = buffer_size
        self._listeners: List[Callable[[ObservationRecord], None]] = []
        # entity_id -> deque of (sequence, record)
        self._recent: Dict[Hashable, Deque[Tuple[int, ObservationRecord]]] = defaultdict(
            lambda: deque(maxlen=self.buffer_size)
        )
        self._seq = 0
        self._lock = threading.Lock()

    def register(self, listener: Callable[[ObservationRecord], None]) -> None:
        """Register a listener; duplicates are ignored."""
        if listener not in self._listeners:
            self._listeners.append(listener)
            self.plugin.log("EventDispatcher: Registered listener", level='debug')

    def unregister(self, listener: Callable[[ObservationRecord], None]) -> None:
        """Remove a previously registered listener."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def dispatch(self, record: ObservationRecord) -> None:
        """Buffer the record and hand it to every listener."""
        with self._lock:
            self._seq += 1
            self._recent[record.entity_id].append((self._seq, record))

        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                self.plugin.log(
                    f"EventDispatcher: Listener error for {record.entity_id}: {e}",
                    level='warn'
                )

    def recent(self, entity_id: Optional[Hashable] = None,
               limit: Optional[int] = None) -> List[ObservationRecord]:
        """
        Most recent records, newest first.

        Args:
            entity_id: Restrict to one entity (None = all entities)
            limit: Maximum number of records (None = everything buffered)
        """
        with self._lock:
            if entity_id is not None:
                entries = list(self._recent.get(entity_id, ()))
            else:
                entries = [e for buf in self._recent.values() for e in buf]
        # Sequence numbers keep commit order within the same second
        entries.sort(key=lambda e: e[0], reverse=True)
        if limit is not None:
            entries = entries[:limit]
        return [record for _, record in entries]
