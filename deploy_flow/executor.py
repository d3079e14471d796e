"""
executor
--------

의존성이 충족된 스텝 하나를 실행하는 Step Executor.

상태 머신: pending -> ready -> running -> {succeeded | failed}
재시도 가능 오류이고 예산이 남아 있으면 backoff 후 failed -> running.
모든 상태 변경은 StateStore.transition(CAS)을 통해서만 한다.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import PermanentStepError, StepError
from .logging_utils import get_logger
from .models import Plan, RetryPolicy, Step, StepStatus
from .registry import AdapterRegistry, StepContext
from .secret_broker import SecretBroker, redact
from .state_store import StateStore


logger = get_logger(__name__)

S = StepStatus

IDEMPOTENT_SKIP_NOTE = "idempotent-skip"


def compute_backoff(
    policy: RetryPolicy,
    attempt: int,
    *,
    previous: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    attempt 번째 실패 후 대기할 시간(초).

    min(cap, base * 2^(attempt-1)) 에 jitter 를 적용하되,
    이전 대기 시간보다 작아지지 않게 한다.
    """
    base = policy.backoff_base_ms / 1000.0
    cap = policy.backoff_cap_ms / 1000.0
    delay = min(cap, base * (2 ** max(attempt - 1, 0)))
    if policy.jitter:
        delay = delay * (0.5 + 0.5 * rng())
    return max(previous, delay)


@dataclass
class StepOutcome:
    step_id: str
    status: Optional[StepStatus]
    claimed: bool = True
    attempts: int = 0
    invocations: int = 0
    delays: List[float] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None


def error_payload(exc: BaseException, attempt: int, secret_values: Any = ()) -> Dict[str, Any]:
    if isinstance(exc, StepError):
        kind = exc.kind
        message = str(exc)
    else:
        kind = PermanentStepError.__name__
        message = f"{type(exc).__name__}: {exc}"
    return {"kind": kind, "message": redact(message, secret_values), "attempt": attempt}


class StepExecutor:
    def __init__(
        self,
        store: StateStore,
        registry: AdapterRegistry,
        broker: SecretBroker,
        *,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Callable[[], float] = random.random,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._broker = broker
        self._sleep = sleep
        self._rng = rng
        self._cancel = cancel_event or threading.Event()
        self._run_id = run_id

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._cancel.wait(seconds)

    def _invoke(self, plan: Plan, step: Step, attempt: int):  # noqa: ANN202
        """
        어댑터를 한 번 호출한다.

        Returns:
            (output, error_payload, retryable, invoked)
        """
        try:
            adapter = self._registry.get(step.kind)
            with self._broker.scope(step.secrets) as secrets:
                ctx = StepContext(
                    plan_id=plan.plan_id,
                    context=plan.context,
                    attempt=attempt,
                    timeout_seconds=step.timeout_seconds,
                    secrets=secrets,
                )
                try:
                    result = adapter.execute(step, ctx)
                except Exception as e:  # noqa: BLE001
                    retryable = isinstance(e, StepError) and e.retryable
                    return None, error_payload(e, attempt, list(secrets.values())), retryable, True
                return secrets.redact(result.message) or "ok", None, False, True
        except StepError as e:
            # 어댑터 조회 실패, 시크릿 해석 실패 등: 어댑터는 호출되지 않음
            return None, error_payload(e, attempt), e.retryable, False

    def run_step(self, plan: Plan, step_id: str) -> StepOutcome:
        pid = plan.plan_id
        step = plan.steps[step_id]
        store = self._store

        if not store.transition(pid, step_id, S.PENDING, S.READY, owner=self._run_id):
            logger.debug("다른 실행 주체가 스텝을 가져갔습니다: %s", step_id)
            return StepOutcome(step_id, store.get_status(pid, step_id), claimed=False)

        if store.has_succeeded_key(pid, step.idempotency_key, exclude=[step_id]):
            if store.transition(pid, step_id, S.READY, S.RUNNING) and store.transition(
                pid, step_id, S.RUNNING, S.SUCCEEDED, note=IDEMPOTENT_SKIP_NOTE, output="already applied"
            ):
                logger.info("같은 멱등 키로 이미 성공한 실행이 있어 건너뜁니다: %s", step_id)
            return StepOutcome(step_id, store.get_status(pid, step_id))

        if not store.transition(pid, step_id, S.READY, S.RUNNING, count_attempt=True):
            return StepOutcome(step_id, store.get_status(pid, step_id), claimed=False)

        outcome = StepOutcome(step_id, S.RUNNING, attempts=1)
        policy = step.retry
        attempt = 1
        previous_delay = 0.0

        while True:
            logger.info("스텝 실행: %s [%s] (attempt %d/%d)", step_id, step.kind, attempt, policy.max_attempts)
            output, error, retryable, invoked = self._invoke(plan, step, attempt)
            if invoked:
                outcome.invocations += 1

            if error is None:
                if store.transition(pid, step_id, S.RUNNING, S.SUCCEEDED, output=output, error=None):
                    logger.info("스텝 성공: %s", step_id)
                else:
                    logger.info("취소된 실행의 결과를 무시합니다: %s", step_id)
                outcome.status = store.get_status(pid, step_id)
                return outcome

            outcome.error = error
            if not store.transition(pid, step_id, S.RUNNING, S.FAILED, error=error):
                logger.info("취소된 실행의 결과를 무시합니다: %s", step_id)
                outcome.status = store.get_status(pid, step_id)
                return outcome

            if not retryable or attempt >= policy.max_attempts or self.cancelled:
                logger.error(
                    "스텝 실패: %s (%s, attempt %d): %s",
                    step_id,
                    error["kind"],
                    attempt,
                    error["message"],
                )
                outcome.status = S.FAILED
                return outcome

            delay = compute_backoff(policy, attempt, previous=previous_delay, rng=self._rng)
            previous_delay = delay
            outcome.delays.append(delay)
            logger.warning(
                "일시적 오류로 %0.2f초 후 재시도합니다: %s (%s)",
                delay,
                step_id,
                error["message"],
            )
            self._wait(delay)

            if self.cancelled:
                logger.info("취소되어 재시도를 중단합니다: %s", step_id)
                outcome.status = store.get_status(pid, step_id)
                return outcome

            if not store.transition(pid, step_id, S.FAILED, S.RUNNING, count_attempt=True):
                outcome.status = store.get_status(pid, step_id)
                return outcome
            attempt += 1
            outcome.attempts = attempt
