"""
cli
---

의존성 기반 배포 오케스트레이터의 click CLI.

- plan: 매니페스트를 컴파일해 실행 순서를 출력 (실행 안 함)
- apply: 플랜 실행 + 헬스체크, 결과에 따라 종료 코드 0/1/2/3
- status / plans / purge: 저장된 실행 기록 조회 및 삭제
- rollback: 성공한 스텝을 역순으로 되돌림
"""

import os
import signal
import sys
import threading
from typing import Optional, Tuple

import click

from .adapters import default_registry
from .config import load_env_files, OrchestratorConfig
from .errors import InvariantViolation, ValidationError
from .logging_utils import setup_logging, get_logger
from .manifest import load_manifest
from .models import HealthSignal, Plan
from .orchestrator import (
    EXIT_STEP_FAILED,
    EXIT_VALIDATION_ERROR,
    Orchestrator,
    render_rollback,
    render_status,
    render_summary,
)
from .planner import compile_plan, render_plan
from .registry import AdapterRegistry
from .secret_broker import create_secret_broker
from .state_store import StateStore, create_state_store
from .verifier import Verifier


logger = get_logger(__name__)

DEFAULT_MANIFEST = "deploy.yaml"

manifest_option = click.option(
    "-f",
    "--manifest",
    "manifest",
    type=str,
    default=DEFAULT_MANIFEST,
    show_default=True,
    help="스텝 매니페스트 파일 (YAML 또는 JSON). 상대 경로는 작업 디렉토리 기준.",
)


@click.group()
@click.option(
    "-C",
    "--chdir",
    "chdir",
    type=click.Path(file_okay=False, dir_okay=True, exists=True),
    default=".",
    help="작업 디렉토리 (기본: 현재 디렉토리)",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="로그 레벨을 DEBUG로 올립니다. (-v 가 많을수록 더 자세한 로그)",
)
@click.pass_context
def main(ctx: click.Context, chdir: str, verbose: int) -> None:
    """의존성 기반 배포 오케스트레이터 CLI"""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["chdir"] = chdir
    ctx.obj["verbose"] = verbose


def _load_config_from_ctx(ctx: click.Context) -> OrchestratorConfig:
    base_dir: str = ctx.obj["chdir"]
    load_env_files(base_dir)
    try:
        cfg = OrchestratorConfig.from_env()
    except ValueError as e:
        click.echo(f"[ERROR] 설정 로드 실패: {e}", err=True)
        sys.exit(1)
    logger.debug("Config loaded: %s", cfg)
    return cfg


def _resolve_path(base_dir: str, path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(base_dir, path)


def _registry(ctx: click.Context) -> AdapterRegistry:
    registry = ctx.obj.get("registry")
    if registry is None:
        registry = default_registry()
        ctx.obj["registry"] = registry
    return registry


def _store(ctx: click.Context, cfg: OrchestratorConfig) -> StateStore:
    store = ctx.obj.get("store")
    if store is None:
        store = create_state_store(cfg.state_backend, _resolve_path(ctx.obj["chdir"], cfg.state_dir))
        ctx.obj["store"] = store
    return store


def _compile(ctx: click.Context, cfg: OrchestratorConfig, manifest_path: str) -> Plan:
    """매니페스트를 읽어 플랜으로 컴파일한다. 검증 오류는 exit 3."""
    base_dir: str = ctx.obj["chdir"]
    try:
        manifest = load_manifest(_resolve_path(base_dir, manifest_path))
        health = manifest.health_signal
        if health is None and cfg.verify_url:
            health = HealthSignal(
                url=cfg.verify_url,
                interval_seconds=cfg.verify_interval_seconds,
                timeout_seconds=cfg.verify_timeout_seconds,
            )
        return compile_plan(
            manifest.steps,
            manifest.merged_context(cfg.global_context()),
            health_signal=health,
            known_kinds=_registry(ctx).kinds(),
        )
    except ValidationError as e:
        click.echo(f"[ERROR] 플랜 검증 실패: {e}", err=True)
        sys.exit(EXIT_VALIDATION_ERROR)


def _orchestrator(ctx: click.Context, cfg: OrchestratorConfig, max_concurrency: Optional[int] = None) -> Orchestrator:
    try:
        broker = create_secret_broker(
            cfg.secret_backend,
            base_dir=ctx.obj["chdir"],
            secrets_file=cfg.secrets_file,
            prefix=cfg.secret_prefix,
            gcp_project_id=cfg.secret_gcp_project_id,
        )
    except ValueError as e:
        click.echo(f"[ERROR] 시크릿 설정 오류: {e}", err=True)
        sys.exit(1)
    return Orchestrator(
        _store(ctx, cfg),
        _registry(ctx),
        broker,
        verifier=ctx.obj.get("verifier") or Verifier(),
        max_concurrency=max_concurrency or cfg.max_concurrency,
    )


@main.command()
@manifest_option
@click.pass_context
def plan(ctx: click.Context, manifest: str) -> None:
    """매니페스트를 컴파일하여 DAG 와 실행 순서를 출력 (실행하지 않음)"""
    cfg = _load_config_from_ctx(ctx)
    compiled = _compile(ctx, cfg, manifest)
    click.echo(render_plan(compiled))


@main.command()
@manifest_option
@click.option(
    "-j",
    "--max-concurrency",
    "max_concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="동시에 실행할 최대 스텝 수 (기본: DEPLOY_MAX_CONCURRENCY)",
)
@click.option("--no-verify", is_flag=True, help="모든 스텝 성공 후 헬스체크를 생략합니다. (VERIFY_ENABLED=false 와 같음)")
@click.pass_context
def apply(ctx: click.Context, manifest: str, max_concurrency: Optional[int], no_verify: bool) -> None:
    """플랜을 컴파일 후 실행하고 헬스체크까지 수행"""
    cfg = _load_config_from_ctx(ctx)
    compiled = _compile(ctx, cfg, manifest)
    orch = _orchestrator(ctx, cfg, max_concurrency)

    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: orch.cancel())

    try:
        report = orch.apply(compiled, verify=cfg.verify_enabled and not no_verify)
    except InvariantViolation as e:
        logger.exception("내부 불변식 위반")
        click.echo(f"[ERROR] 내부 오류: {e}", err=True)
        sys.exit(EXIT_STEP_FAILED)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    click.echo(render_summary(report))
    if report.exit_code != 0:
        sys.exit(report.exit_code)


def _target_plan(ctx: click.Context, cfg: OrchestratorConfig, plan_id: Optional[str], manifest: str) -> Tuple[str, Optional[Plan]]:
    if plan_id:
        return plan_id, None
    compiled = _compile(ctx, cfg, manifest)
    return compiled.plan_id, compiled


@main.command()
@click.argument("plan_id", required=False)
@manifest_option
@click.pass_context
def status(ctx: click.Context, plan_id: Optional[str], manifest: str) -> None:
    """플랜 ID(또는 매니페스트)의 스텝별 실행 기록을 출력"""
    cfg = _load_config_from_ctx(ctx)
    target_id, compiled = _target_plan(ctx, cfg, plan_id, manifest)
    records = _store(ctx, cfg).records(target_id)
    click.echo(render_status(target_id, records, compiled))


@main.command()
@manifest_option
@click.option("-y", "--yes", is_flag=True, help="확인 없이 바로 롤백합니다.")
@click.pass_context
def rollback(ctx: click.Context, manifest: str, yes: bool) -> None:
    """성공한 스텝의 역방향 동작을 역순으로 실행"""
    cfg = _load_config_from_ctx(ctx)
    compiled = _compile(ctx, cfg, manifest)
    if not yes:
        click.confirm(f"플랜 {compiled.plan_id} 의 성공한 스텝을 롤백할까요?", abort=True)

    orch = _orchestrator(ctx, cfg)
    report = orch.rollback(compiled)
    click.echo(render_rollback(report))
    if not report.ok:
        sys.exit(EXIT_STEP_FAILED)


@main.command(name="plans")
@click.pass_context
def list_plans(ctx: click.Context) -> None:
    """저장된 플랜 ID 와 상태 요약을 출력"""
    cfg = _load_config_from_ctx(ctx)
    store = _store(ctx, cfg)
    plan_ids = store.list_plans()
    if not plan_ids:
        click.echo("- (저장된 실행 기록 없음)")
        return
    for pid in plan_ids:
        counts: dict[str, int] = {}
        for rec in store.records(pid):
            counts[rec.status.value] = counts.get(rec.status.value, 0) + 1
        summary = ", ".join(f"{k}={v}" for k, v in sorted(counts.items()))
        click.echo(f"- {pid}: {summary}")


@main.command()
@click.argument("plan_id")
@click.option("-y", "--yes", is_flag=True, help="확인 없이 바로 삭제합니다.")
@click.pass_context
def purge(ctx: click.Context, plan_id: str, yes: bool) -> None:
    """플랜의 실행 기록을 삭제"""
    cfg = _load_config_from_ctx(ctx)
    if not yes:
        click.confirm(f"플랜 {plan_id} 의 실행 기록을 삭제할까요?", abort=True)
    if _store(ctx, cfg).purge(plan_id):
        click.echo(f"{plan_id} 실행 기록을 삭제했습니다.")
    else:
        click.echo(f"{plan_id} 에 해당하는 실행 기록이 없습니다.", err=True)
        sys.exit(1)
