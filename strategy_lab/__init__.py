"""
=============================================================================
전략 실험실 (Strategy Lab) - 자동 튜닝 + 페이퍼 트레이딩 봇
=============================================================================

[ 시스템 전체 구조 ]

    run_backtest.py / run_iteration.py / run_tuning.py / run_paper.py (진입점)
         │
         ├── utils/config.py        ← config.yaml 설정 로드
         ├── utils/logger.py        ← 로깅
         ├── utils/factory.py       ← 상태 저장소 / 데이터 제공자 / 브로커 생성
         │
         ├── strategies/            ← 시그널 생성기 (템플릿 레지스트리)
         │     ├── breakout.py          (momentum_breakout_v1)
         │     ├── mean_reversion.py    (mean_reversion_extremes_v1)
         │     └── regime_switch.py     (regime_switcher_v1)
         │
         ├── backtest/              ← 백테스트 엔진 + Run 실행기
         ├── tuning/                ← 변이 / 점수 / 게이트 / 반복 엔진 / 튜닝 잡
         ├── versions/              ← 버전 생성 / 복제 / 승격
         ├── execution/             ← 리스크 매니저 / 실행 루프 / 배포 생명주기
         └── storage/               ← SQLAlchemy 상태 저장소


[ 핵심 추상 클래스 (core/) - 모든 구현체의 부모 ]

    core/broker_api.py       → brokers/alpaca_broker.py::AlpacaBroker (페이퍼 REST)
                             → brokers/mock_broker.py::MockBroker     (테스트용)

    core/data_provider.py    → data/clickhouse_provider.py            (과거 봉 저장소)
                             → brokers/alpaca_broker.py::AlpacaDataProvider (시세 API)
                             → brokers/mock_broker.py::MockDataProvider     (테스트용)

    core/trading_strategy.py → Signal / Position / RiskLimits 공용 타입


[ 반복 튜닝 흐름 ]

    1. 실험 그룹의 챔피언 버전 로드 (없으면 스키마 기본값으로 시드)
    2. 숫자형 파라미터 1개 변이 → 도전자 버전 생성
    3. 백테스트 → 지표 집계 → 점수 → 게이트
    4. 통과하면 챔피언 교체, 아니면 rejected. 모든 시행은 iterations에 기록


[ 페이퍼 트레이딩 흐름 ]

    1. BACKTEST_WINNER 버전을 배포로 시작 (시작 자산 기록)
    2. 스케줄러가 실행 루프 tick 호출 → 시그널 → 리스크 판단 → 주문
    3. target_days 경과 후 평가 → LIVE_READY 또는 REJECTED
"""
