"""
Tests for configuration validation and option parsing.
"""

import dataclasses

import pytest

from volfee.config import Config
from volfee.errors import InvalidConfiguration
from volfee.fixed_point import MAX_UINT


class TestDefaults:

    def test_reference_constants(self, config):
        assert config.alpha_numerator == 3000
        assert config.alpha_scale == 10000
        assert config.alpha_complement == 7000
        assert (config.min_fee, config.max_fee, config.default_fee) == (500, 10000, 3000)
        assert (config.low_threshold, config.high_threshold) == (100, 10000)

    def test_frozen(self, config):
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.min_fee = 1

    def test_to_dict(self, config):
        data = config.to_dict()
        assert data["max_displacement"] == 1_774_544
        assert data["db_path"] == ''


class TestValidation:
    """Invalid configurations fail at construction."""

    @pytest.mark.parametrize("kwargs, field", [
        ({"alpha_numerator": 0}, "alpha_numerator"),
        ({"alpha_scale": 0}, "alpha_scale"),
        ({"alpha_numerator": 10001}, "alpha_numerator"),
        ({"min_fee": 6000, "default_fee": 6000, "max_fee": 5000}, "max_fee"),
        ({"default_fee": 200}, "default_fee"),
        ({"default_fee": 20000}, "default_fee"),
        ({"low_threshold": 500, "high_threshold": 500}, "high_threshold"),
        ({"low_threshold": 600, "high_threshold": 500}, "high_threshold"),
        ({"max_displacement": 0}, "max_displacement"),
        ({"max_displacement": MAX_UINT}, "max_displacement"),
        ({"prometheus_port": 70000}, "prometheus_port"),
        ({"min_fee": True}, "min_fee"),
        ({"min_fee": 5.5}, "min_fee"),
    ])
    def test_rejected(self, kwargs, field):
        with pytest.raises(InvalidConfiguration) as exc_info:
            Config(db_path='', **kwargs)
        assert exc_info.value.field_name == field

    def test_flat_fee_range_allowed(self):
        cfg = Config(db_path='', min_fee=3000, max_fee=3000, default_fee=3000)
        assert cfg.max_fee == cfg.min_fee

    def test_full_weight_alpha_allowed(self):
        assert Config(db_path='', alpha_numerator=10000).alpha_complement == 0


class TestFromOptions:
    """Plugin option strings -> Config."""

    def test_string_values_converted(self):
        cfg = Config.from_options({
            'volfee-db-path': '',
            'volfee-alpha-numerator': '2500',
            'volfee-min-fee': '100',
            'volfee-enable-prometheus': 'true',
            'volfee-prometheus-port': '9900',
        })

        assert cfg.alpha_numerator == 2500
        assert cfg.min_fee == 100
        assert cfg.enable_prometheus is True
        assert cfg.prometheus_port == 9900
        assert cfg.max_fee == 10000

    def test_unknown_and_missing_options_ignored(self):
        cfg = Config.from_options({'volfee-db-path': '', 'some-other-plugin': 'x',
                                   'volfee-min-fee': None})
        assert cfg.min_fee == 500

    def test_bad_integer(self):
        with pytest.raises(InvalidConfiguration) as exc_info:
            Config.from_options({'volfee-db-path': '', 'volfee-max-fee': 'lots'})
        assert exc_info.value.field_name == 'max_fee'

    def test_bool_parsing(self):
        for raw in ('false', '0', 'no', 'off'):
            cfg = Config.from_options({'volfee-db-path': '', 'volfee-enable-prometheus': raw})
            assert cfg.enable_prometheus is False

    def test_summary(self):
        summary = Config(db_path='').summary()
        assert "alpha=3000/10000" in summary
        assert "fee_range=[500, 10000]" in summary
