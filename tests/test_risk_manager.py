import pytest

from conftest import channel_bars
from strategy_lab.core.trading_strategy import Position, PositionSide, RiskLimits, Signal, SignalType
from strategy_lab.execution.risk_manager import RiskAction, RiskManager, stop_and_target

PARAMS = {"atr_period": 14, "stop_atr_mult": 1.5, "takeprofit_atr_mult": 2.5}
ENTRY = Signal(SignalType.ENTRY_LONG, "breakout")


def _manager(**limits):
    return RiskManager(PARAMS, RiskLimits.from_dict(limits))


def test_position_size_uses_smaller_budget():
    manager = _manager()
    assert manager.position_size(105.0, 100_000) == 19
    assert manager.position_size(105.0, 1_000) == 8       # 1000 * 0.9 / 105
    assert manager.position_size(0.0, 100_000) == 0


def test_stop_and_target_mirror_for_short():
    assert stop_and_target(PositionSide.LONG, 100.0, 2.0, PARAMS) == (97.0, 105.0)
    assert stop_and_target(PositionSide.SHORT, 100.0, 2.0, PARAMS) == (103.0, 95.0)


def test_entry_blocked_by_drawdown_and_loss_streak():
    manager = _manager(max_drawdown_usd=100, max_consecutive_losses=3)
    assert manager.entry_block_reason(100.0, 2) is None
    assert manager.entry_block_reason(100.01, 0).startswith("max drawdown exceeded")
    assert manager.entry_block_reason(0.0, 3) == "consecutive losses reached: 3 >= 3"

    decision = manager.decide(ENTRY, None, 105.0, channel_bars(20, 105.0), 100_000, loss_streak=3)
    assert decision.action == RiskAction.NONE
    assert decision.reason == "consecutive losses reached: 3 >= 3"


def test_unset_limits_never_block():
    manager = _manager()
    assert manager.entry_block_reason(1_000_000.0, 99) is None

    decision = manager.decide(ENTRY, None, 105.0, channel_bars(20, 105.0), 100_000, 1_000_000.0, 99)
    assert decision.action == RiskAction.OPEN
    assert decision.qty == 19
    assert decision.stop_loss == pytest.approx(105.0 - 1.5 * 18 / 14)


def test_limits_do_not_block_exits():
    manager = _manager(max_drawdown_usd=10, max_consecutive_losses=1)
    position = Position(PositionSide.LONG, 105.0, "2024-06-03T15:00:00+00:00", 19, 103.0, 108.0, "QQQ")

    decision = manager.decide(Signal(SignalType.EXIT, "channel lost"), position, 104.0,
                              channel_bars(20, 104.0), 100_000, 500.0, 5)
    assert decision.action == RiskAction.CLOSE
    assert decision.reason == "channel lost"
