"""
orchestrator
------------

컴파일된 플랜을 끝까지 실행하는 컨트롤러와 결과 요약.

- apply: ready 스텝을 스레드 풀로 실행하고 실패의 하위 스텝은 skipped 로 만든 뒤 헬스체크
- rollback: 성공한 스텝의 역방향 동작을 역 토폴로지 순서로 실행
- render_*: CLI 가 출력하는 텍스트 요약

같은 플랜을 여러 실행(run)이 동시에 다룰 수 있다. 다른 살아 있는 실행이 소유한 스텝은
건드리지 않고 끝나기를 기다린다.
"""

from __future__ import annotations

import random
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .errors import InvariantViolation, StepError, VerificationTimeout
from .executor import IDEMPOTENT_SKIP_NOTE, StepExecutor, error_payload
from .logging_utils import get_logger
from .models import ExecutionRecord, Plan, StepStatus
from .registry import AdapterRegistry, StepContext, supports_rollback
from .secret_broker import SecretBroker
from .state_store import StateStore
from .verifier import VerificationResult, Verifier


logger = get_logger(__name__)

S = StepStatus

ROLLED_BACK_NOTE = "rolled-back"


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    VERIFICATION_TIMEOUT = "verification_timeout"
    CANCELLED = "cancelled"


EXIT_OK = 0
EXIT_STEP_FAILED = 1
EXIT_VERIFICATION_TIMEOUT = 2
EXIT_VALIDATION_ERROR = 3

_EXIT_CODES = {
    RunOutcome.SUCCEEDED: EXIT_OK,
    RunOutcome.FAILED: EXIT_STEP_FAILED,
    RunOutcome.CANCELLED: EXIT_STEP_FAILED,
    RunOutcome.VERIFICATION_TIMEOUT: EXIT_VERIFICATION_TIMEOUT,
}


@dataclass
class RunReport:
    plan: Plan
    outcome: RunOutcome
    records: List[ExecutionRecord]
    invocations: int = 0
    verification: Optional[VerificationResult] = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.outcome]

    def record(self, step_id: str) -> ExecutionRecord:
        for rec in self.records:
            if rec.step_id == step_id:
                return rec
        raise KeyError(step_id)


@dataclass
class RollbackEntry:
    step_id: str
    action: str  # rolled-back | no-reverse | failed
    message: str = ""


@dataclass
class RollbackReport:
    plan_id: str
    entries: List[RollbackEntry] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(e.action != "failed" for e in self.entries)


class Orchestrator:
    """
    플랜 하나를 끝까지 실행하는 컨트롤러.

    ready 스텝을 max_concurrency 한도 안에서 스레드 풀로 실행하고,
    실패한 스텝의 하위 스텝은 skipped 로 만든다.
    모든 스텝이 성공하면 Verifier 로 헬스체크를 수행한다.

    한 번의 실행(apply)마다 새 인스턴스를 쓰는 것을 전제로 한다. (cancel 은 되돌릴 수 없음)
    """

    def __init__(
        self,
        store: StateStore,
        registry: AdapterRegistry,
        broker: SecretBroker,
        *,
        verifier: Optional[Verifier] = None,
        max_concurrency: int = 4,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Callable[[], float] = random.random,
        poll_interval: float = 0.2,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency 는 1 이상이어야 합니다: {max_concurrency}")
        self.store = store
        self.registry = registry
        self.broker = broker
        self.verifier = verifier
        self.max_concurrency = max_concurrency
        self.poll_interval = poll_interval
        self._cancel = threading.Event()
        self.run_id = uuid.uuid4().hex[:12]
        self.executor = StepExecutor(
            store,
            registry,
            broker,
            sleep=sleep,
            rng=rng,
            cancel_event=self._cancel,
            run_id=self.run_id,
        )

    # -----------------------------
    # 취소
    # -----------------------------
    def cancel(self) -> None:
        if not self._cancel.is_set():
            logger.warning("취소 요청을 받았습니다. 새 스텝을 시작하지 않습니다.")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _foreign_in_flight(self, records: Iterable[ExecutionRecord]) -> List[str]:
        """살아 있는 다른 실행이 소유하고 아직 처리 중(재시도 대기 포함)인 스텝."""
        return [
            r.step_id
            for r in records
            if r.status in (S.READY, S.RUNNING, S.FAILED)
            and r.owner
            and r.owner != self.run_id
            and self.store.owner_is_live(r.owner)
        ]

    def _skip_remaining(self, plan: Plan, in_flight: Sequence[str]) -> None:
        """취소 시 종료되지 않은 스텝을 skipped 로 만든다. 실행 중인 스텝의 결과는 이후 무시된다."""
        records = self.store.records(plan.plan_id)
        foreign = set(self._foreign_in_flight(records))
        for rec in records:
            if rec.step_id in foreign:
                continue
            status = rec.status
            if status in (S.PENDING, S.READY, S.RUNNING) or (
                status == S.FAILED and rec.step_id in in_flight
            ):
                self.store.transition(plan.plan_id, rec.step_id, status, S.SKIPPED, note="cancelled")

    def _skip_downstream_of_failures(self, plan: Plan, in_flight: Sequence[str]) -> None:
        records = {r.step_id: r for r in self.store.records(plan.plan_id)}
        busy = set(in_flight) | set(self._foreign_in_flight(records.values()))
        for sid, rec in records.items():
            # 실행 중(재시도 대기 포함)인 failed 는 아직 최종 실패가 아니다.
            if rec.status != S.FAILED or sid in busy:
                continue
            for down in plan.downstream(sid):
                if records[down].status == S.PENDING and self.store.transition(
                    plan.plan_id, down, S.PENDING, S.SKIPPED, note=f"upstream failed: {sid}"
                ):
                    records[down].status = S.SKIPPED
                    logger.warning("상위 스텝 %s 실패로 %s 를 건너뜁니다.", sid, down)

    # -----------------------------
    # 실행
    # -----------------------------
    def apply(self, plan: Plan, *, verify: bool = True) -> RunReport:
        """
        플랜을 실행한다.

        Raises:
            InvariantViolation: 더 이상 진행할 수 없는데 종료되지 않은 스텝이 남은 경우
        """
        self.store.begin_run(self.run_id)
        try:
            return self._apply(plan, verify=verify)
        finally:
            self.store.end_run(self.run_id)

    def _apply(self, plan: Plan, *, verify: bool) -> RunReport:
        pid = plan.plan_id
        previous = self.store.prepare(plan)
        already = sorted(sid for sid, st in previous.items() if st == S.SUCCEEDED)
        if already:
            logger.info("이전 실행에서 이미 성공한 스텝 (재실행 안 함): %s", already)

        in_flight: Dict[Future, str] = {}
        invocations = 0

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="deploy-step") as pool:
            while True:
                if self.cancelled:
                    self._skip_remaining(plan, list(in_flight.values()))
                    break

                self._skip_downstream_of_failures(plan, list(in_flight.values()))

                ready = self.store.list_ready(plan)
                running = set(in_flight.values())
                capacity = self.max_concurrency - len(in_flight)
                for sid in plan.order:
                    if capacity <= 0:
                        break
                    if sid in ready and sid not in running:
                        logger.debug("스텝 디스패치: %s", sid)
                        in_flight[pool.submit(self.executor.run_step, plan, sid)] = sid
                        capacity -= 1

                if not in_flight:
                    foreign = self._foreign_in_flight(self.store.records(pid))
                    if not foreign:
                        break
                    logger.debug("다른 실행이 처리 중인 스텝을 기다립니다: %s", foreign)
                    self._cancel.wait(self.poll_interval)
                    continue

                done, _ = wait(list(in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    in_flight.pop(fut)
                    outcome = fut.result()
                    invocations += outcome.invocations

        records = self.store.records(pid)
        by_status: Dict[StepStatus, List[str]] = {}
        for rec in records:
            by_status.setdefault(rec.status, []).append(rec.step_id)

        if self.cancelled:
            return RunReport(plan, RunOutcome.CANCELLED, records, invocations, message="cancelled")

        stuck = [r.step_id for r in records if not r.status.is_terminal]
        if stuck:
            raise InvariantViolation(
                f"진행할 수 있는 스텝이 없는데 종료되지 않은 스텝이 남아 있습니다: {sorted(stuck)}"
            )

        failed = by_status.get(S.FAILED, [])
        if failed:
            return RunReport(
                plan,
                RunOutcome.FAILED,
                records,
                invocations,
                message=f"failed steps: {', '.join(sorted(failed))}",
            )

        report = RunReport(plan, RunOutcome.SUCCEEDED, records, invocations)
        if verify and plan.health_signal is not None:
            verifier = self.verifier or Verifier()
            try:
                report.verification = verifier.wait_until_ready(plan.health_signal)
            except VerificationTimeout as e:
                logger.error("%s", e)
                report.outcome = RunOutcome.VERIFICATION_TIMEOUT
                report.message = str(e)
        return report

    # -----------------------------
    # 조회/롤백
    # -----------------------------
    def status(self, plan_id: str) -> List[ExecutionRecord]:
        return self.store.records(plan_id)

    def rollback(self, plan: Plan) -> RollbackReport:
        """
        성공한 스텝마다 역방향 어댑터를 역 토폴로지 순서로 호출한다.

        - 역방향 동작이 없는 어댑터의 스텝은 그대로 두고 계속 진행한다.
        - 하나라도 실패하면 그 지점에서 멈춘다. (상위 의존성을 먼저 지우지 않기 위해)
        - 롤백된 스텝은 pending 으로 돌아가 다음 apply 에서 다시 실행된다.
        """
        pid = plan.plan_id
        report = RollbackReport(pid)
        records = {r.step_id: r for r in self.store.records(pid)}

        for sid in reversed(plan.order):
            rec = records.get(sid)
            if rec is None or rec.status != S.SUCCEEDED:
                continue
            step = plan.steps[sid]

            if rec.note == IDEMPOTENT_SKIP_NOTE:
                # 실제 작업은 같은 멱등 키를 가진 다른 스텝이 수행했다.
                self.store.transition(pid, sid, S.SUCCEEDED, S.PENDING, note=ROLLED_BACK_NOTE)
                report.entries.append(RollbackEntry(sid, "rolled-back", "shared idempotency key"))
                continue

            try:
                adapter = self.registry.get(step.kind)
            except StepError as e:
                report.entries.append(RollbackEntry(sid, "failed", str(e)))
                break

            if not supports_rollback(adapter):
                logger.info("역방향 동작이 없는 스텝입니다: %s [%s]", sid, step.kind)
                report.entries.append(RollbackEntry(sid, "no-reverse"))
                continue

            logger.info("스텝 롤백: %s [%s]", sid, step.kind)
            try:
                with self.broker.scope(step.secrets) as secrets:
                    ctx = StepContext(
                        plan_id=pid,
                        context=plan.context,
                        timeout_seconds=step.timeout_seconds,
                        secrets=secrets,
                    )
                    try:
                        result = adapter.rollback(step, ctx)
                        message = secrets.redact(result.message) or "ok"
                    except Exception as e:  # noqa: BLE001
                        message = error_payload(e, 1, list(secrets.values()))["message"]
                        raise StepError(message) from None
            except StepError as e:
                logger.error("스텝 롤백 실패: %s: %s", sid, e)
                report.entries.append(RollbackEntry(sid, "failed", str(e)))
                break

            self.store.transition(pid, sid, S.SUCCEEDED, S.PENDING, note=ROLLED_BACK_NOTE, output=message)
            report.entries.append(RollbackEntry(sid, "rolled-back", message))

        return report


# -----------------------------
# 텍스트 요약
# -----------------------------
def _table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> List[str]:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    fmt = "  ".join("{:<%d}" % w for w in widths)
    lines = [fmt.format(*headers).rstrip(), fmt.format(*("-" * w for w in widths))]
    lines.extend(fmt.format(*row).rstrip() for row in rows)
    return lines


def _error_cell(rec: ExecutionRecord, width: int = 80) -> str:
    if rec.last_error:
        msg = " ".join(str(rec.last_error.get("message", "")).split())
        text = f"{rec.last_error.get('kind')}: {msg}"
    else:
        text = rec.note or ""
    return text if len(text) <= width else text[: width - 1] + "…"


def render_records(plan: Optional[Plan], records: Sequence[ExecutionRecord]) -> List[str]:
    order = list(plan.order) if plan is not None else sorted(r.step_id for r in records)
    by_id = {r.step_id: r for r in records}
    rows = []
    for sid in order:
        rec = by_id.get(sid)
        if rec is None:
            continue
        kind = plan.steps[sid].kind if plan is not None else ""
        rows.append([sid, kind, rec.status.value, str(rec.attempts), _error_cell(rec)])
    return _table(["STEP", "KIND", "STATUS", "ATTEMPTS", "ERROR/NOTE"], rows)


def render_summary(report: RunReport) -> str:
    lines: List[str] = []
    lines.append("# Deploy summary")
    lines.append(f"- plan_id: {report.plan.plan_id}")
    lines.append(f"- outcome: {report.outcome.value}")
    lines.append(f"- adapter invocations: {report.invocations}")
    if report.verification is not None:
        lines.append(f"- verify: ready after {report.verification.polls} poll(s)")
    if report.message:
        lines.append(f"- detail: {report.message}")
    lines.append("")
    lines.extend(render_records(report.plan, report.records))
    return "\n".join(lines)


def render_status(plan_id: str, records: Sequence[ExecutionRecord], plan: Optional[Plan] = None) -> str:
    lines: List[str] = []
    lines.append("# Deploy status")
    lines.append(f"- plan_id: {plan_id}")
    if not records:
        lines.append("- (실행 기록 없음)")
        return "\n".join(lines)
    updated = max((r.updated_at or "" for r in records), default="")
    lines.append(f"- updated_at: {updated}")
    lines.append("")
    lines.extend(render_records(plan, records))
    return "\n".join(lines)


def render_rollback(report: RollbackReport) -> str:
    lines: List[str] = []
    lines.append("# Rollback summary")
    lines.append(f"- plan_id: {report.plan_id}")
    lines.append("")
    if not report.entries:
        lines.append("- 롤백할 성공 스텝이 없습니다.")
        return "\n".join(lines)
    lines.extend(_table(["STEP", "ACTION", "MESSAGE"], [[e.step_id, e.action, e.message] for e in report.entries]))
    return "\n".join(lines)
