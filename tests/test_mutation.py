import numpy as np
import pytest

from strategy_lab.strategies import get_template
from strategy_lab.tuning.mutation import mutate_params
from strategy_lab.tuning.schema import ParamSchema


@pytest.fixture
def schema():
    return ParamSchema.from_dict(get_template("momentum_breakout_v1").param_schema)


def test_exactly_one_numeric_key_changes_within_bounds(schema):
    params = schema.defaults()
    for seed in range(200):
        result = mutate_params(params, schema, aggressiveness=1.0, rng=np.random.default_rng(seed))
        changed = [k for k in params if params[k] != result.params[k]]
        assert len(changed) <= 1
        assert list(result.param_diff) == [result.key]

        definition = schema.get(result.key)
        assert definition.is_numeric
        assert definition.min <= result.new_value <= definition.max
        assert result.params["trade_direction"] == params["trade_direction"]


def test_int_params_stay_on_step_grid(schema):
    params = schema.defaults()
    for seed in range(100):
        result = mutate_params(params, schema, 0.5, np.random.default_rng(seed))
        if schema.get(result.key).type == "int":
            assert isinstance(result.new_value, int)
            assert result.new_value != result.old_value


def test_input_params_are_not_modified(schema):
    params = schema.defaults()
    snapshot = dict(params)
    mutate_params(params, schema, 1.0, np.random.default_rng(1))
    assert params == snapshot


def test_clamped_at_bounds(schema):
    params = {**schema.defaults(), "lookback_bars": 100}
    bias = {"lookback_bars": "higher"}
    result = mutate_params(params, schema, 1.0, np.random.default_rng(3), bias)
    assert result.key == "lookback_bars"
    assert result.new_value == 100
    assert not result.changed


def test_bias_restricts_key_and_direction(schema):
    params = schema.defaults()
    for seed in range(50):
        up = mutate_params(params, schema, 1.0, np.random.default_rng(seed), {"breakout_pct": "higher"})
        assert up.key == "breakout_pct"
        assert up.new_value >= up.old_value

        down = mutate_params(params, schema, 1.0, np.random.default_rng(seed), {"stop_atr_mult": "tighter"})
        assert down.key == "stop_atr_mult"
        assert down.new_value <= down.old_value


def test_no_numeric_params_returns_unchanged():
    schema = ParamSchema.from_dict({"params": [
        {"key": "trade_direction", "type": "enum", "values": ["long", "short"], "default": "long"},
    ]})
    result = mutate_params({"trade_direction": "long"}, schema, 0.5, np.random.default_rng(0))
    assert result.key is None
    assert result.params == {"trade_direction": "long"}


def test_same_seed_same_mutation(schema):
    params = schema.defaults()
    a = mutate_params(params, schema, 0.7, np.random.default_rng(42))
    b = mutate_params(params, schema, 0.7, np.random.default_rng(42))
    assert a.params == b.params
