"""
성과 집계 / 점수 계산 모듈.

[ 역할 ]
    - aggregate_best_metrics(): 한 버전의 완료된 런(Run)들에서 지표별 최고값을 모은다.
    - calculate_score(): 집계 지표를 목적함수 가중치로 하나의 점수로 만든다.

[ 점수 공식 ]
    score = pf_weight     * min(PF, 5) / 3
          + return_weight * clamp(net_pnl / 1000, -1, 2)
          - dd_penalty    * min(2 * max_dd, 1)
          + sharpe_weight * clamp(win_rate, 0, 1)      ← 샤프 추정 대신 승률 사용

    PF / 순손익에 대해 단조 증가, 낙폭에 대해 단조 감소.

[ 호출하는 곳 ]
    - tuning/gates.py (챔피언 vs 도전자 비교)
    - tuning/iteration_engine.py (metric_before / metric_after 기록)
    - tuning/tuning_job.py (구간별 점수)
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Iterable, Optional


@dataclass
class ObjectiveConfig:
    """실험 그룹의 목적함수 가중치. 합이 1일 필요는 없다."""
    pf_weight: float = 0.35
    return_weight: float = 0.25
    dd_penalty: float = 0.15
    sharpe_weight: float = 0.25

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ObjectiveConfig":
        data = data or {}
        return cls(**{
            f.name: float(data[f.name]) for f in fields(cls)
            if data.get(f.name) is not None
        })

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class MetricSnapshot:
    """점수 계산에 쓰는 지표 묶음. win_rate, max_drawdown은 [0, 1] 비율."""
    profit_factor: float = 0.0
    net_pnl_usd: float = 0.0
    win_rate: float = 0.0
    max_drawdown: float = 0.0
    trades_count: int = 0
    runs_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "MetricSnapshot":
        data = data or {}
        return cls(
            profit_factor=float(data.get("profit_factor") or 0),
            net_pnl_usd=float(data.get("net_pnl_usd") or 0),
            win_rate=float(data.get("win_rate") or 0),
            max_drawdown=float(data.get("max_drawdown") or 0),
            trades_count=int(data.get("trades_count") or 0),
            runs_count=int(data.get("runs_count") or 0),
        )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def aggregate_best_metrics(metrics: Iterable[Any]) -> MetricSnapshot:
    """여러 런의 지표에서 지표별 최고값을 모은다.

    PF / 순손익 / 승률 / 거래수는 최대값, 낙폭은 최소값.
    런이 없으면 모든 값이 0인 스냅샷 (runs_count=0).

    Args:
        metrics: profit_factor, net_pnl_usd, win_rate, max_drawdown, trades_count
                 속성을 가진 객체들 (storage.models.RunMetrics 또는 MetricSnapshot)
    """
    items = list(metrics)
    if not items:
        return MetricSnapshot()

    return MetricSnapshot(
        profit_factor=max(float(m.profit_factor or 0) for m in items),
        net_pnl_usd=max(float(m.net_pnl_usd or 0) for m in items),
        win_rate=max(float(m.win_rate or 0) for m in items),
        max_drawdown=min(float(m.max_drawdown or 0) for m in items),
        trades_count=max(int(m.trades_count or 0) for m in items),
        runs_count=len(items),
    )


def calculate_score(metrics: MetricSnapshot, objective: Optional[ObjectiveConfig] = None) -> float:
    """집계 지표 → 점수."""
    objective = objective or ObjectiveConfig()

    pf_term = objective.pf_weight * min(metrics.profit_factor, 5.0) / 3
    return_term = objective.return_weight * _clamp(metrics.net_pnl_usd / 1000, -1.0, 2.0)
    dd_term = objective.dd_penalty * min(2 * metrics.max_drawdown, 1.0)
    win_term = objective.sharpe_weight * _clamp(metrics.win_rate, 0.0, 1.0)

    return float(pf_term + return_term - dd_term + win_term)
