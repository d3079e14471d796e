"""
adapters
--------

기본 제공 스텝 어댑터.

- noop: 아무것도 하지 않음 (플랜 구조 확인/테스트용)
- command: params.command 를 외부 명령으로 실행 (az/gcloud/helm 등)
- apply-manifest: kubectl apply -f / delete -f

명령 인자에는 ${region} 같은 전역 컨텍스트 값만 치환한다.
시크릿은 인자에 넣지 않고 params.secretEnv 로 지정한 환경변수로만 전달한다.
"""

from __future__ import annotations

import os
import shlex
from string import Template
from textwrap import shorten
from typing import Dict, List, Mapping, Optional

from .errors import PermanentStepError
from .logging_utils import get_logger
from .models import Step, StepResult
from .registry import AdapterRegistry, StepContext
from .subprocess_utils import RunResult, run_command


logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 900.0


def _as_argv(raw: object, step: Step, field: str) -> List[str]:
    if isinstance(raw, str):
        return shlex.split(raw)
    if isinstance(raw, list) and raw and all(isinstance(a, (str, int, float)) for a in raw):
        return [str(a) for a in raw]
    raise PermanentStepError(f"스텝 {step.id}: params.{field} 는 문자열 또는 문자열 목록이어야 합니다.")


def render_args(argv: List[str], ctx: StepContext) -> List[str]:
    values = ctx.context.as_dict()
    values["plan_id"] = ctx.plan_id
    return [Template(arg).safe_substitute(values) for arg in argv]


def _summary(result: RunResult) -> str:
    lines = [line for line in result.stdout.strip().splitlines() if line.strip()]
    if not lines:
        return "ok"
    return shorten(lines[-1], width=200)


class NoopAdapter:
    def execute(self, step: Step, ctx: StepContext) -> StepResult:
        message = str(step.params.get("message", "noop"))
        logger.info("noop 스텝: %s (%s)", step.id, message)
        return StepResult(message=message)

    def rollback(self, step: Step, ctx: StepContext) -> StepResult:
        return StepResult(message="noop rollback")


class CommandAdapter:
    """
    params:
        command: 실행할 명령 (문자열 또는 인자 목록)
        rollbackCommand: 롤백 시 실행할 명령 (없으면 롤백 미지원으로 간주)
        cwd: 작업 디렉토리
        env: 추가 환경변수 (평문, 시크릿 금지)
        secretEnv: {ENV_NAME: secret-name} 형태로 시크릿을 환경변수로 주입
    """

    def __init__(self, runner=run_command) -> None:  # noqa: ANN001
        self._run = runner

    def _env(self, step: Step, ctx: StepContext) -> Dict[str, str]:
        env: Dict[str, str] = dict(os.environ)
        env.update(ctx.context.as_env())
        env["DEPLOY_PLAN_ID"] = ctx.plan_id
        env["DEPLOY_STEP_ID"] = step.id
        static_env: Mapping[str, object] = step.params.get("env") or {}
        env.update({str(k): str(v) for k, v in static_env.items()})

        secret_env: Mapping[str, str] = step.params.get("secretEnv") or {}
        for env_name, secret_name in secret_env.items():
            if secret_name not in ctx.secrets:
                raise PermanentStepError(
                    f"스텝 {step.id}: secretEnv 가 선언되지 않은 시크릿 {secret_name!r} 를 참조합니다. "
                    "(steps[].secrets 에 추가하세요)"
                )
            env[str(env_name)] = ctx.secrets[secret_name]
        return env

    def _invoke(self, step: Step, ctx: StepContext, field: str) -> StepResult:
        argv = render_args(_as_argv(step.params.get(field), step, field), ctx)
        timeout = ctx.timeout_seconds or DEFAULT_COMMAND_TIMEOUT
        cwd: Optional[str] = step.params.get("cwd")
        result = self._run(argv, cwd=cwd, env=self._env(step, ctx), timeout=timeout)
        return StepResult(message=_summary(result), data={"returncode": result.returncode})

    def execute(self, step: Step, ctx: StepContext) -> StepResult:
        return self._invoke(step, ctx, "command")

    def rollback(self, step: Step, ctx: StepContext) -> StepResult:
        if not step.params.get("rollbackCommand"):
            raise PermanentStepError(f"스텝 {step.id}: rollbackCommand 가 정의되지 않았습니다.")
        return self._invoke(step, ctx, "rollbackCommand")


class ApplyManifestAdapter:
    """
    params:
        path: 매니페스트 파일 또는 디렉토리
        namespace: (선택) 네임스페이스
        kubeContext: (선택) kubectl --context
    """

    def __init__(self, runner=run_command, kubectl: str = "kubectl") -> None:  # noqa: ANN001
        self._run = runner
        self._kubectl = kubectl

    def _base(self, step: Step, ctx: StepContext) -> List[str]:
        path = step.params.get("path")
        if not isinstance(path, str) or not path:
            raise PermanentStepError(f"스텝 {step.id}: params.path 가 필요합니다.")
        cmd = [self._kubectl]
        if step.params.get("kubeContext"):
            cmd.append(f"--context={step.params['kubeContext']}")
        if step.params.get("namespace"):
            cmd.append(f"--namespace={step.params['namespace']}")
        return render_args(cmd, ctx) + ["-f", render_args([path], ctx)[0]]

    def execute(self, step: Step, ctx: StepContext) -> StepResult:
        base = self._base(step, ctx)
        cmd = base[:1] + ["apply"] + base[1:]
        result = self._run(cmd, timeout=ctx.timeout_seconds or DEFAULT_COMMAND_TIMEOUT)
        return StepResult(message=_summary(result))

    def rollback(self, step: Step, ctx: StepContext) -> StepResult:
        base = self._base(step, ctx)
        cmd = base[:1] + ["delete"] + base[1:] + ["--ignore-not-found"]
        result = self._run(cmd, timeout=ctx.timeout_seconds or DEFAULT_COMMAND_TIMEOUT)
        return StepResult(message=_summary(result))


# 외부 CLI 로 구현되는 kind 들은 command 어댑터를 그대로 쓴다.
COMMAND_KINDS = ["command", "provision-db", "import-image", "run-migration"]


def default_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    registry.register("noop", NoopAdapter())
    command = CommandAdapter()
    for kind in COMMAND_KINDS:
        registry.register(kind, command)
    registry.register("apply-manifest", ApplyManifestAdapter())
    return registry
