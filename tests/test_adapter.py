"""
Tests for the IntegrationAdapter engine contract.

Tests:
- Engine-default fallback for unknown entities
- Outcome translation (ints, numeric strings, mappings)
- Displacement bound enforced before any state change
- Staged post-transaction settle
- Observability records and listener isolation
"""

import pytest
from unittest.mock import MagicMock

from volfee.adapter import FeeQuote, IntegrationAdapter
from volfee.config import Config
from volfee.errors import AlreadyInitialized, ArithmeticOverflow, UnknownEntity
from volfee.events import EventDispatcher
from volfee.registry import ControllerRegistry


class TestPreTransaction:
    """pre_transaction quotes the stored fee or defers to the engine."""

    def test_unknown_entity_uses_engine_default(self, adapter, mock_plugin):
        quote = adapter.pre_transaction("no-such-pool")

        assert quote == FeeQuote(entity_id="no-such-pool", fee=None, use_engine_default=True)
        assert quote.to_dict()["fee_bps"] is None
        mock_plugin.log.assert_called()

    def test_known_entity_quotes_current_fee(self, adapter, sample_entity_id):
        adapter.initialize(sample_entity_id, 0)

        quote = adapter.pre_transaction(sample_entity_id)

        assert quote.fee == 3000
        assert quote.use_engine_default is False
        assert quote.to_dict()["fee_bps"] == 30.0

    def test_initialize_twice_fails(self, adapter, sample_entity_id):
        adapter.initialize(sample_entity_id, 0)
        with pytest.raises(AlreadyInitialized):
            adapter.initialize(sample_entity_id, 0)


class TestPostTransaction:
    """post_transaction observes and publishes one record."""

    def test_reference_sequence(self, adapter, sample_entity_id):
        adapter.initialize(sample_entity_id, 0)

        boot = adapter.post_transaction(sample_entity_id, 0)
        rise = adapter.post_transaction(sample_entity_id, {"tick": 100})
        quiet = adapter.post_transaction(sample_entity_id, "100")

        assert boot.bootstrap is True and boot.fee == 3000
        assert (rise.estimate, rise.fee, rise.displacement) == (3000, 3282, 100)
        assert (quiet.estimate, quiet.fee, quiet.displacement) == (2100, 2419, 0)
        assert adapter.pre_transaction(sample_entity_id).fee == 2419

    def test_unknown_entity_raises(self, adapter):
        with pytest.raises(UnknownEntity):
            adapter.post_transaction("ghost", 10)

    def test_records_are_dispatched(self, adapter, dispatcher, sample_entity_id):
        listener = MagicMock()
        dispatcher.register(listener)
        adapter.initialize(sample_entity_id, 0)

        adapter.post_transaction(sample_entity_id, 0)
        record = adapter.post_transaction(sample_entity_id, 100)

        assert listener.call_count == 2
        listener.assert_called_with(record)

    def test_listener_failure_does_not_fail_transaction(self, adapter, dispatcher,
                                                        mock_plugin, sample_entity_id):
        dispatcher.register(MagicMock(side_effect=RuntimeError("dashboard down")))
        adapter.initialize(sample_entity_id, 0)

        record = adapter.post_transaction(sample_entity_id, 0)

        assert record.bootstrap is True
        assert adapter.registry.get_state(sample_entity_id).initialized is True
        warn_calls = [c for c in mock_plugin.log.call_args_list
                      if c.kwargs.get('level') == 'warn']
        assert any("dashboard down" in c.args[0] for c in warn_calls)


class TestDisplacementBound:
    """Out-of-range displacements are rejected with state untouched."""

    @pytest.fixture
    def bounded_adapter(self, mock_plugin):
        registry = ControllerRegistry(Config(db_path='', max_displacement=1000), mock_plugin)
        return IntegrationAdapter(registry, EventDispatcher(mock_plugin), mock_plugin)

    def test_rejects_and_leaves_state(self, bounded_adapter):
        bounded_adapter.initialize("pool", 0)
        bounded_adapter.post_transaction("pool", 0)
        before = bounded_adapter.registry.get_state("pool")

        with pytest.raises(ArithmeticOverflow):
            bounded_adapter.post_transaction("pool", 1001)

        assert bounded_adapter.registry.get_state("pool") is before
        assert len(bounded_adapter.dispatcher.recent("pool")) == 1

    def test_bound_applies_to_bootstrap_too(self, bounded_adapter):
        bounded_adapter.initialize("pool", 0)
        with pytest.raises(ArithmeticOverflow):
            bounded_adapter.post_transaction("pool", -5000)
        assert bounded_adapter.registry.get_state("pool").initialized is False

    def test_boundary_displacement_accepted(self, bounded_adapter):
        bounded_adapter.initialize("pool", 0)
        bounded_adapter.post_transaction("pool", 0)

        record = bounded_adapter.post_transaction("pool", -1000)

        assert record.displacement == -1000


class TestExtractPosition:
    """Engine outcome translation."""

    def test_plain_int(self):
        assert IntegrationAdapter.extract_position(-887272) == -887272

    def test_numeric_string(self):
        assert IntegrationAdapter.extract_position("-42") == -42

    def test_mapping_key_priority(self):
        outcome = {"position": 5, "tick": 7}
        assert IntegrationAdapter.extract_position(outcome) == 7
        assert IntegrationAdapter.extract_position({"new_position": 3}) == 3

    @pytest.mark.parametrize("bad", [True, 1.5, "abc", None, {"price": 10}, {"tick": "x"}])
    def test_rejects_non_integer(self, bad):
        with pytest.raises(ValueError):
            IntegrationAdapter.extract_position(bad)


class TestStagedSettle:
    """post_transaction_staged + settle for engines that may still abort."""

    def test_settle_success_commits_and_publishes(self, adapter, sample_entity_id):
        adapter.initialize(sample_entity_id, 0)
        adapter.post_transaction(sample_entity_id, 0)

        pending = adapter.post_transaction_staged(sample_entity_id, 100)
        assert adapter.pre_transaction(sample_entity_id).fee == 3000

        record = adapter.settle(pending, success=True)

        assert record.fee == 3282
        assert adapter.pre_transaction(sample_entity_id).fee == 3282
        assert adapter.dispatcher.recent(sample_entity_id)[0] == record

    def test_settle_failure_rolls_back(self, adapter, sample_entity_id):
        adapter.initialize(sample_entity_id, 0)
        adapter.post_transaction(sample_entity_id, 0)
        before = adapter.registry.get_state(sample_entity_id)

        pending = adapter.post_transaction_staged(sample_entity_id, 100)

        assert adapter.settle(pending, success=False) is None
        assert adapter.registry.get_state(sample_entity_id) is before
        assert len(adapter.dispatcher.recent(sample_entity_id)) == 1


class TestQueries:
    """Read-only dashboard views."""

    def test_get_metrics(self, adapter, sample_entity_id):
        adapter.initialize(sample_entity_id, 0)
        adapter.post_transaction(sample_entity_id, 0)
        adapter.post_transaction(sample_entity_id, 100)

        metrics = adapter.get_metrics(sample_entity_id)

        assert metrics["last_position"] == 100
        assert metrics["volatility_estimate"] == 3000
        assert metrics["current_fee"] == 3282
        assert metrics["current_fee_bps"] == 32.82
        assert metrics["fee_band"] == "mid"
        assert metrics["initialized"] is True
        assert metrics["observation_count"] == 2

    def test_get_metrics_unknown(self, adapter):
        with pytest.raises(UnknownEntity):
            adapter.get_metrics("ghost")

    def test_recent_events_from_buffer(self, adapter, sample_entity_id):
        adapter.initialize(sample_entity_id, 0)
        for position in (0, 100, 100):
            adapter.post_transaction(sample_entity_id, position)

        events = adapter.recent_events(sample_entity_id, limit=2)

        assert [e["fee"] for e in events] == [2419, 3282]
        assert events[0]["fee_bps"] == 24.19

    def test_recent_events_from_database(self, persistent_registry, database,
                                         mock_plugin):
        dispatcher = EventDispatcher(mock_plugin)
        dispatcher.register(database.record_observation_event)
        adapter = IntegrationAdapter(persistent_registry, dispatcher, mock_plugin)

        adapter.initialize("pool-1", 0)
        for position in (0, 100, 100):
            adapter.post_transaction("pool-1", position)

        events = adapter.recent_events("pool-1", limit=10)

        assert [e["estimate"] for e in events] == [2100, 3000, 0]
        assert events[-1]["bootstrap"] is True
