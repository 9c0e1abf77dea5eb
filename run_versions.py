"""
전략(봇) / 버전 관리 스크립트 (진입점).

[ 사용법 ]
    # 봇 + 첫 버전 생성 (파라미터 미지정 시 템플릿 기본값)
    python run_versions.py create --name "QQQ breakout" --template momentum_breakout_v1 -p lookback_bars=30
    python run_versions.py create --name "QQQ breakout" --template momentum_breakout_v1 --group <group_id>

    # 기존 봇에 버전 추가
    python run_versions.py create --strategy <strategy_id> -p breakout_pct=0.003

    # 버전 목록
    python run_versions.py list --strategy <strategy_id>

    # 변형 복제 (tweak: param=v1,v2,v3)
    python run_versions.py duplicate --version <version_id> --count 3 --tweak lookback_bars=20,30,40

    # 승격 (backtested / approved_paper / approved_live)
    python run_versions.py promote --version <version_id> --target approved_paper
"""

import argparse

from run_backtest import parse_param
from strategy_lab.core.exceptions import PromotionError
from strategy_lab.storage.models import Strategy, StrategyVersion
from strategy_lab.strategies import get_template
from strategy_lab.utils.config import Config
from strategy_lab.utils.factory import open_repository
from strategy_lab.utils.logger import setup_logger
from strategy_lab.versions.version_service import (
    PROMOTION_RULES,
    create_version,
    duplicate_version,
    load_schema,
    promote_version,
)


def _print_version(v: StrategyVersion) -> None:
    champion = " *champion*" if v.is_champion else ""
    print(f"  v{v.version_number:<4} {v.id}  {v.status:<15} {v.lifecycle_status:<16} "
          f"{v.content_hash[:8]}{champion}  {v.notes}")


def parse_tweak(tweak: str) -> dict:
    """'key=v1,v2,v3' → {"param": key, "variations": [v1, v2, v3]}"""
    key, _, values = tweak.partition("=")
    return {
        "param": key.strip(),
        "variations": [parse_param(f"{key}={v}")[1] for v in values.split(",") if v.strip()],
    }


def cmd_create(config: Config, args) -> None:
    repo = open_repository(config)
    if args.strategy:
        strategy = repo.get_strategy(args.strategy)
        if strategy is None:
            print(f"오류: 봇을 찾을 수 없습니다: {args.strategy}")
            return
    else:
        if not args.name or not args.template:
            print("오류: 새 봇은 --name, --template이 필요합니다.")
            return
        template = get_template(args.template)
        strategy = Strategy(name=args.name, template_id=template.template_id)
        repo.add(strategy)
        repo.flush()

    schema = load_schema(repo, strategy.template_id)
    params = {**schema.defaults(), **dict(parse_param(p) for p in args.param)}
    risk_limits = dict(parse_param(r) for r in args.risk)
    version = create_version(
        repo, strategy, params, risk_limits,
        experiment_group_id=args.group, notes=args.notes, schema=schema,
    )
    repo.commit()
    print(f"버전 생성: {strategy.name} v{version.version_number} ({version.id})")


def cmd_list(config: Config, args) -> None:
    repo = open_repository(config)
    strategy = repo.get_strategy(args.strategy)
    if strategy is None:
        print(f"오류: 봇을 찾을 수 없습니다: {args.strategy}")
        return
    print(f"[{strategy.name}] template={strategy.template_id}")
    for v in repo.versions_by_strategy(strategy.id):
        _print_version(v)


def cmd_duplicate(config: Config, args) -> None:
    repo = open_repository(config)
    created = duplicate_version(repo, args.version, args.count, [parse_tweak(t) for t in args.tweak])
    repo.commit()
    print(f"{len(created)}개 변형 생성:")
    for v in created:
        _print_version(v)


def cmd_promote(config: Config, args) -> None:
    repo = open_repository(config)
    try:
        version = promote_version(repo, args.version, args.target)
    except PromotionError as e:
        repo.rollback()
        print(f"승격 실패 ({args.target}):")
        for violation in e.violations:
            print(f"  - {violation}")
        return
    repo.commit()
    print(f"승격 완료: {version.id} → {version.status} ({version.lifecycle_status})")


def main():
    parser = argparse.ArgumentParser(description="전략 버전 관리")
    parser.add_argument("--config", type=str, default="config.yaml", help="설정 파일 경로")
    sub = parser.add_subparsers(dest="command", required=True)

    p_create = sub.add_parser("create", help="버전 생성")
    p_create.add_argument("--strategy", default=None, help="기존 봇 ID")
    p_create.add_argument("--name", default=None, help="새 봇 이름")
    p_create.add_argument("--template", default=None, help="새 봇 템플릿 ID")
    p_create.add_argument("-p", "--param", action="append", default=[], help="파라미터 (예: -p lookback_bars=30)")
    p_create.add_argument("-r", "--risk", action="append", default=[], help="리스크 한도 (예: -r max_daily_loss_usd=100)")
    p_create.add_argument("--group", default=None, help="실험 그룹 ID")
    p_create.add_argument("--notes", default="")

    p_list = sub.add_parser("list", help="버전 목록")
    p_list.add_argument("--strategy", required=True)

    p_dup = sub.add_parser("duplicate", help="변형 복제")
    p_dup.add_argument("--version", required=True)
    p_dup.add_argument("--count", type=int, default=1)
    p_dup.add_argument("--tweak", action="append", default=[], help="param=v1,v2,...")

    p_promote = sub.add_parser("promote", help="승격")
    p_promote.add_argument("--version", required=True)
    p_promote.add_argument("--target", required=True, choices=sorted(PROMOTION_RULES.keys()))

    args = parser.parse_args()
    config = Config.load(args.config)
    setup_logger(level=config.log_level, log_dir=config.log_dir)

    commands = {
        "create": cmd_create,
        "list": cmd_list,
        "duplicate": cmd_duplicate,
        "promote": cmd_promote,
    }
    commands[args.command](config, args)


if __name__ == "__main__":
    main()
