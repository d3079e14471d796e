"""
planner
-------

선언된 스텝 목록을 검증된 DAG(Plan)로 컴파일한다.
외부 시스템을 호출하지 않는 순수 함수만 둔다.
"""

from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import CycleError, DuplicateStepError, UnknownDependencyError, UnknownStepKindError
from .logging_utils import get_logger
from .models import GlobalContext, HealthSignal, Plan, Step, canonical_json


logger = get_logger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


def compute_plan_id(steps: Iterable[Step], context: Optional[GlobalContext] = None) -> str:
    """
    선언된 스텝 집합 + 전역 컨텍스트의 안정적인 해시. 선언 순서와 무관하다.

    어댑터가 ${region} 같은 컨텍스트 값을 실행 시점에 치환하므로
    컨텍스트가 바뀌면 다른 플랜으로 취급한다. (값이 빈 항목은 제외)
    """
    identity = sorted((s.identity() for s in steps), key=lambda d: d["id"])
    ctx = {k: v for k, v in (context or GlobalContext()).as_dict().items() if v}
    payload = {"steps": identity, "context": ctx}
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()[:16]


def _index_steps(steps: Sequence[Step]) -> Dict[str, Step]:
    by_id: Dict[str, Step] = {}
    for step in steps:
        if step.id in by_id:
            raise DuplicateStepError(step.id)
        by_id[step.id] = step
    return by_id


def _check_dependencies(by_id: Dict[str, Step]) -> None:
    for step in by_id.values():
        for dep in step.depends_on:
            if dep not in by_id:
                raise UnknownDependencyError(step.id, dep)


def _topological_order(by_id: Dict[str, Step]) -> List[str]:
    """
    3색 DFS 로 순환을 검출하면서 후위 순서로 토폴로지 정렬한다.
    진행 중(GRAY) 노드를 다시 만나면 순환이다.
    """
    color = {sid: _WHITE for sid in by_id}
    order: List[str] = []

    for root in by_id:
        if color[root] != _WHITE:
            continue
        # (노드, 다음에 볼 의존성 인덱스) 스택. 재귀 깊이 제한을 피한다.
        stack: List[Tuple[str, int]] = [(root, 0)]
        path: List[str] = [root]
        color[root] = _GRAY
        while stack:
            node, idx = stack[-1]
            deps = by_id[node].depends_on
            if idx < len(deps):
                stack[-1] = (node, idx + 1)
                dep = deps[idx]
                if color[dep] == _GRAY:
                    cycle = path[path.index(dep):] + [dep]
                    raise CycleError(cycle)
                if color[dep] == _WHITE:
                    color[dep] = _GRAY
                    stack.append((dep, 0))
                    path.append(dep)
                continue
            color[node] = _BLACK
            order.append(node)
            stack.pop()
            path.pop()

    return order


def _closures(by_id: Dict[str, Step], order: List[str]) -> Dict[str, frozenset]:
    closures: Dict[str, frozenset] = {}
    # order 는 의존성이 먼저 나오므로 한 번의 순회로 충분하다.
    for sid in order:
        acc = set()
        for dep in by_id[sid].depends_on:
            acc.add(dep)
            acc |= closures[dep]
        closures[sid] = frozenset(acc)
    return closures


def compile_plan(
    steps: Sequence[Step],
    context: Optional[GlobalContext] = None,
    *,
    health_signal: Optional[HealthSignal] = None,
    known_kinds: Optional[Iterable[str]] = None,
) -> Plan:
    """
    스텝 선언을 검증하고 Plan 을 만든다.

    Raises:
        DuplicateStepError, UnknownDependencyError, CycleError, UnknownStepKindError
        (모두 ValidationError 하위 타입)
    """
    by_id = _index_steps(steps)
    _check_dependencies(by_id)

    if known_kinds is not None:
        kinds = set(known_kinds)
        for step in by_id.values():
            if step.kind not in kinds:
                raise UnknownStepKindError(step.id, step.kind)

    order = _topological_order(by_id)
    closures = _closures(by_id, order)

    dependents: Dict[str, List[str]] = {sid: [] for sid in by_id}
    for sid in order:
        for dep in by_id[sid].depends_on:
            dependents[dep].append(sid)

    context = context or GlobalContext()
    plan = Plan(
        plan_id=compute_plan_id(by_id.values(), context),
        steps=by_id,
        context=context,
        order=tuple(order),
        closures=closures,
        dependents={k: tuple(v) for k, v in dependents.items()},
        health_signal=health_signal,
    )
    logger.debug("플랜 컴파일 완료: plan_id=%s order=%s", plan.plan_id, list(plan.order))
    return plan


def execution_waves(plan: Plan) -> List[List[str]]:
    """
    동시에 실행될 수 있는 스텝 묶음(wave)을 반환한다.
    각 스텝의 wave 는 가장 깊은 의존성 + 1 이다.
    """
    depth: Dict[str, int] = {}
    for sid in plan.order:
        deps = plan.steps[sid].depends_on
        depth[sid] = 1 + max((depth[d] for d in deps), default=-1)

    waves: List[List[str]] = []
    for sid in plan.order:
        while len(waves) <= depth[sid]:
            waves.append([])
        waves[depth[sid]].append(sid)
    return waves


def render_plan(plan: Plan) -> str:
    """
    실행 없이 DAG 와 실행 순서를 요약한 텍스트를 리턴한다.
    """
    lines: List[str] = []
    lines.append("# Deploy plan")
    lines.append(f"- plan_id: {plan.plan_id}")
    for key, value in plan.context.as_dict().items():
        if value:
            lines.append(f"- {key}: {value}")
    lines.append("")

    lines.append("## Steps")
    for sid in plan.order:
        step = plan.steps[sid]
        deps = ", ".join(step.depends_on) if step.depends_on else "(none)"
        lines.append(f"- {sid} [{step.kind}] <- {deps}")
        if step.secrets:
            lines.append(f"  secrets: {', '.join(step.secrets)}")
        if step.retry.max_attempts > 1:
            lines.append(
                f"  retry: maxAttempts={step.retry.max_attempts} backoffBaseMs={step.retry.backoff_base_ms}"
            )
    lines.append("")

    lines.append("## Execution order")
    for i, wave in enumerate(execution_waves(plan), start=1):
        lines.append(f"{i}. {', '.join(wave)}")

    if plan.health_signal is not None:
        lines.append("")
        lines.append("## Verify")
        lines.append(f"- url: {plan.health_signal.url}")
        lines.append(f"- timeout: {plan.health_signal.timeout_seconds:g}s")

    return "\n".join(lines)
