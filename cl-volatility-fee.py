#!/usr/bin/env python3
"""
cl-volatility-fee: A Volatility-Adaptive Fee Plugin for Core Lightning

This plugin runs a per-entity fee controller for an external execution
engine (e.g. an AMM pool manager). The engine calls three RPC methods
around every transaction:

    volfee-initialize  entity_id baseline_position   (once, on creation)
    volfee-quote       entity_id                     (before a transaction)
    volfee-observe     entity_id position            (after a transaction)

Each observation updates a fixed-point EWMA of squared position
displacement, and the estimate is mapped to a fee in [min_fee, max_fee]
that is quoted for the *next* transaction.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import os
from typing import Any, Dict, Optional

from pyln.client import Plugin

from volfee.adapter import IntegrationAdapter
from volfee.config import Config
from volfee.database import Database
from volfee.errors import VolatilityFeeError
from volfee.events import EventDispatcher, ObservationRecord
from volfee.fee_mapper import fee_to_bps
from volfee.metrics import PrometheusExporter, MetricsListener
from volfee.registry import ControllerRegistry


plugin = Plugin()

# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
registry: Optional[ControllerRegistry] = None
dispatcher: Optional[EventDispatcher] = None
adapter: Optional[IntegrationAdapter] = None
metrics_exporter: Optional[PrometheusExporter] = None

NOTIFICATION_TOPIC = "volfee_observation"


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='volfee-db-path',
    default='~/.lightning/volatility_fee.db',
    description='Path to the SQLite database for controller state (empty = no persistence)'
)

plugin.add_option(
    name='volfee-alpha-numerator',
    default='3000',
    description='EWMA weight on the newest observation, as a fraction of alpha-scale (default: 3000)'
)

plugin.add_option(
    name='volfee-alpha-scale',
    default='10000',
    description='Fixed-point scale for the EWMA weight (default: 10000)'
)

plugin.add_option(
    name='volfee-min-fee',
    default='500',
    description='Minimum fee in hundredths of a bp (default: 500 = 5bp)'
)

plugin.add_option(
    name='volfee-max-fee',
    default='10000',
    description='Maximum fee in hundredths of a bp (default: 10000 = 100bp)'
)

plugin.add_option(
    name='volfee-default-fee',
    default='3000',
    description='Fee quoted until the first volatility update (default: 3000 = 30bp)'
)

plugin.add_option(
    name='volfee-low-threshold',
    default='100',
    description='Volatility at or below which min-fee applies (default: 100)'
)

plugin.add_option(
    name='volfee-high-threshold',
    default='10000',
    description='Volatility at or above which max-fee applies (default: 10000)'
)

plugin.add_option(
    name='volfee-max-displacement',
    default='1774544',
    description='Largest accepted |position change| per observation (default: 1774544)'
)

plugin.add_option(
    name='volfee-event-buffer-size',
    default='30',
    description='Recent observation events kept in memory per entity (default: 30)'
)

plugin.add_option(
    name='volfee-event-retention-days',
    default='30',
    description='Days of observation events kept in the database, 0 = forever (default: 30)'
)

plugin.add_option(
    name='volfee-enable-prometheus',
    default='false',
    description='If true, start Prometheus metrics exporter HTTP server (default: false)'
)

plugin.add_option(
    name='volfee-prometheus-port',
    default='9810',
    description='Port for Prometheus HTTP metrics server (default: 9810)'
)

plugin.add_notification_topic(NOTIFICATION_TOPIC)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the volatility fee plugin.

    1. Build and validate the (immutable) configuration
    2. Open the database and hydrate controller records
    3. Wire the event dispatcher to the event log, metrics and notifications
    4. Start Prometheus metrics exporter (if enabled)
    """
    global config, database, registry, dispatcher, adapter, metrics_exporter

    plugin.log("Initializing cl-volatility-fee plugin...")

    try:
        config = Config.from_options(options)
    except VolatilityFeeError as e:
        plugin.log(f"Invalid configuration, refusing to start: {e}", level='error')
        raise

    plugin.log(f"Configuration loaded: {config.summary()}")

    if config.db_path:
        database = Database(os.path.expanduser(config.db_path), plugin)
        database.initialize()
        database.cleanup_old_events(config.event_retention_days)

    registry = ControllerRegistry(config, plugin, database=database)
    registry.load_from_database()

    dispatcher = EventDispatcher(plugin, buffer_size=config.event_buffer_size)
    if database is not None:
        dispatcher.register(database.record_observation_event)
    dispatcher.register(_publish_notification)

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=plugin)
        if metrics_exporter.start_server():
            dispatcher.register(MetricsListener(metrics_exporter, registry))

    adapter = IntegrationAdapter(registry, dispatcher, plugin)

    plugin.log(f"cl-volatility-fee initialized, tracking {len(registry.entity_ids())} entities")


def _publish_notification(record: ObservationRecord) -> None:
    """Forward an observation record to lightningd subscribers."""
    plugin.notify(NOTIFICATION_TOPIC, record.to_dict())


def _not_ready() -> Optional[Dict[str, Any]]:
    if adapter is None:
        return {"error": "Plugin not initialized"}
    return None


# =============================================================================
# RPC METHODS - Engine lifecycle
# =============================================================================

@plugin.method("volfee-initialize")
def volfee_initialize(plugin: Plugin, entity_id: str, baseline_position: int) -> Dict[str, Any]:
    """
    Create the controller record for a new entity.

    Usage: lightning-cli volfee-initialize entity_id baseline_position
    """
    err = _not_ready()
    if err:
        return err
    try:
        state = adapter.initialize(entity_id, baseline_position)
    except (VolatilityFeeError, ValueError) as e:
        return {"error": str(e)}
    return {"status": "success", "entity_id": entity_id, **state.to_dict()}


@plugin.method("volfee-quote")
def volfee_quote(plugin: Plugin, entity_id: str) -> Dict[str, Any]:
    """
    Fee to apply to the transaction about to execute.

    Unknown entities are not an error: the reply sets use_engine_default.

    Usage: lightning-cli volfee-quote entity_id
    """
    err = _not_ready()
    if err:
        return err
    return adapter.pre_transaction(entity_id).to_dict()


@plugin.method("volfee-observe")
def volfee_observe(plugin: Plugin, entity_id: str, position: int) -> Dict[str, Any]:
    """
    Report the position after a transaction and get the next fee.

    Usage: lightning-cli volfee-observe entity_id position
    """
    err = _not_ready()
    if err:
        return err
    try:
        record = adapter.post_transaction(entity_id, position)
    except (VolatilityFeeError, ValueError) as e:
        return {"error": str(e)}
    return record.to_dict()


# =============================================================================
# RPC METHODS - Observability
# =============================================================================

@plugin.method("volfee-metrics")
def volfee_metrics(plugin: Plugin, entity_id: str) -> Dict[str, Any]:
    """
    Current controller state for an entity (read-only).

    Usage: lightning-cli volfee-metrics entity_id
    """
    err = _not_ready()
    if err:
        return err
    try:
        return adapter.get_metrics(entity_id)
    except VolatilityFeeError as e:
        return {"error": str(e)}


@plugin.method("volfee-events")
def volfee_events(plugin: Plugin, entity_id: Optional[str] = None, limit: int = 30) -> Dict[str, Any]:
    """
    Recent observation events, newest first.

    Usage: lightning-cli volfee-events [entity_id] [limit]
    """
    err = _not_ready()
    if err:
        return err
    limit = max(1, min(int(limit), 1000))
    events = adapter.recent_events(entity_id, limit)
    return {"count": len(events), "events": events}


@plugin.method("volfee-status")
def volfee_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Summary of every tracked entity.

    Usage: lightning-cli volfee-status
    """
    err = _not_ready()
    if err:
        return err
    entities = []
    for entity_id in sorted(registry.entity_ids(), key=str):
        state = registry.get_state(entity_id)
        entities.append({
            "entity_id": entity_id,
            "current_fee": state.current_fee,
            "current_fee_bps": fee_to_bps(state.current_fee),
            "volatility_estimate": state.volatility_estimate,
            "initialized": state.initialized,
        })
    return {
        "entities_tracked": len(entities),
        "persistence": database is not None,
        "prometheus": metrics_exporter is not None and metrics_exporter.is_running(),
        "config": config.summary(),
        "entities": entities,
    }


@plugin.method("volfee-config")
def volfee_config(plugin: Plugin) -> Dict[str, Any]:
    """
    Active configuration. Values are fixed at startup.

    Usage: lightning-cli volfee-config
    """
    err = _not_ready()
    if err:
        return err
    return {"immutable": True, "config": config.to_dict()}


if __name__ == "__main__":
    plugin.run()
