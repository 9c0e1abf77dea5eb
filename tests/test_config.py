from pathlib import Path

import pytest

from strategy_lab.utils.config import Config

EXAMPLE = Path(__file__).resolve().parents[1] / "config.example.yaml"


@pytest.fixture(autouse=True)
def no_alpaca_env(monkeypatch):
    monkeypatch.delenv("ALPACA_API_KEY", raising=False)
    monkeypatch.delenv("ALPACA_SECRET_KEY", raising=False)


def test_example_config_loads():
    config = Config.from_yaml(EXAMPLE)
    assert config.database.url == "sqlite:///strategy_lab.db"
    assert config.broker.data_feed == "iex"
    assert config.iteration.gates.min_trades == 5
    assert config.iteration.gates.max_dd_hard_cap is None
    assert config.execution.timeframe == "5m"
    assert config.backtest.cost_model.commission_per_share == 0.01


def test_partial_yaml_keeps_defaults_and_ignores_unknown(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "iteration:\n"
        "  max_iterations: 3\n"
        "  gates:\n"
        "    min_trades: 12\n"
        "execution:\n"
        "  min_bars: 30\n"
        "  something_else: true\n"
        "log_level: DEBUG\n",
        encoding="utf-8",
    )
    config = Config.from_yaml(path)

    assert config.iteration.max_iterations == 3
    assert config.iteration.gates.min_trades == 12
    assert config.iteration.gates.max_dd == 0.20
    assert config.execution.min_bars == 30
    assert config.execution.bar_limit == 100
    assert config.log_level == "DEBUG"


def test_env_overrides_broker_keys(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("broker:\n  api_key: from-file\n  secret_key: file-secret\n", encoding="utf-8")
    monkeypatch.setenv("ALPACA_API_KEY", "from-env")

    config = Config.from_yaml(path)
    assert config.broker.api_key == "from-env"
    assert config.broker.secret_key == "file-secret"


def test_load_missing_file_uses_defaults(tmp_path):
    config = Config.load(tmp_path / "nope.yaml")
    assert config.database.url == "sqlite:///strategy_lab.db"
    assert config.iteration.max_iterations == 10


def test_save_and_reload(tmp_path):
    config = Config()
    config.execution.min_bars = 42
    config.iteration.gates.max_dd_hard_cap = 0.3
    path = tmp_path / "out" / "config.yaml"
    config.save_yaml(path)

    reloaded = Config.load(path)
    assert reloaded.execution.min_bars == 42
    assert reloaded.iteration.gates.max_dd_hard_cap == 0.3


def test_json_config(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"backtest": {"initial_capital": 5000}}', encoding="utf-8")
    config = Config.load(path)
    assert config.backtest.initial_capital == 5000
