"""
템플릿 간 공유되는 파라미터 정의.

형식은 tuning/schema.py::ParamSchema.from_dict()가 읽는 구조와 같다:
    {"key", "type"(int/float/bool/enum), "min", "max", "step", "default", "label", "values", "depends_on"}
"""

ATR_PERIOD = {"key": "atr_period", "type": "int", "min": 5, "max": 50, "step": 1, "default": 14,
              "label": "ATR 기간"}
STOP_ATR_MULT = {"key": "stop_atr_mult", "type": "float", "min": 0.5, "max": 5.0, "step": 0.1, "default": 1.5,
                 "label": "손절 ATR 배수"}
TAKEPROFIT_ATR_MULT = {"key": "takeprofit_atr_mult", "type": "float", "min": 0.5, "max": 10.0, "step": 0.1,
                       "default": 2.5, "label": "익절 ATR 배수"}
MAX_TRADES_PER_DAY = {"key": "max_trades_per_day", "type": "int", "min": 1, "max": 20, "step": 1, "default": 6,
                      "label": "일일 최대 진입 횟수"}
TRADE_DIRECTION = {"key": "trade_direction", "type": "enum", "values": ["long", "short", "both"],
                   "default": "both", "label": "매매 방향"}

BREAKOUT_PARAMS = [
    {"key": "lookback_bars", "type": "int", "min": 10, "max": 100, "step": 1, "default": 40,
     "label": "채널 기간 (봉)"},
    {"key": "breakout_pct", "type": "float", "min": 0.0005, "max": 0.02, "step": 0.0005, "default": 0.002,
     "label": "돌파 여유 비율"},
]

MEAN_REVERSION_PARAMS = [
    {"key": "rsi_period", "type": "int", "min": 2, "max": 50, "step": 1, "default": 14, "label": "RSI 기간"},
    {"key": "rsi_oversold", "type": "float", "min": 5, "max": 45, "step": 1, "default": 30,
     "label": "과매도 기준"},
    {"key": "rsi_overbought", "type": "float", "min": 55, "max": 95, "step": 1, "default": 70,
     "label": "과매수 기준"},
]

RISK_PARAMS = [ATR_PERIOD, STOP_ATR_MULT, TAKEPROFIT_ATR_MULT, MAX_TRADES_PER_DAY, TRADE_DIRECTION]
