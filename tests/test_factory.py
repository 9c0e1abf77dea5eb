from datetime import date

import pytest

from strategy_lab.brokers.mock_broker import MockBroker, MockDataProvider
from strategy_lab.core.exceptions import ConfigurationError
from strategy_lab.data.sample_data import generate_sample_bars
from strategy_lab.utils.config import Config
from strategy_lab.utils.factory import create_broker, create_data_provider, open_repository


def test_open_repository_syncs_templates():
    config = Config()
    config.database.url = "sqlite:///:memory:"
    repo = open_repository(config)
    assert repo.get_template("momentum_breakout_v1") is not None
    assert repo.get_template("regime_switcher_v1") is not None


def test_sample_provider_and_mock_broker():
    config = Config()
    provider = create_data_provider(config, "sample", ["QQQ", "IWM"])
    assert isinstance(provider, MockDataProvider)
    assert provider.get_symbols() == ["QQQ", "IWM"]
    assert len(provider.get_recent_bars("QQQ", "5m", 50)) == 50

    broker = create_broker(config, mock=True)
    assert isinstance(broker, MockBroker)
    assert broker.get_account().equity == config.backtest.initial_capital


def test_unknown_source():
    with pytest.raises(ConfigurationError):
        create_data_provider(Config(), "yahoo")


def test_sample_bars_cover_regular_session_only():
    bars = generate_sample_bars("QQQ", date(2024, 6, 3), date(2024, 6, 9))
    local = bars["ts"].dt.tz_convert("America/New_York")

    assert len(bars) == 5 * 78
    assert local.dt.weekday.max() == 4
    assert local.iloc[0].strftime("%H:%M") == "09:30"
    assert local.iloc[-1].strftime("%H:%M") == "15:55"
    assert (bars["high"] >= bars["low"]).all()

    again = generate_sample_bars("QQQ", date(2024, 6, 3), date(2024, 6, 9))
    assert bars.equals(again)
