"""
state_store
-----------

스텝별 실행 기록(ExecutionRecord)의 단일 진실 공급원.

- 모든 상태 변경은 compare-and-swap(transition) 으로만 이루어진다.
- 기록은 plan_id(선언된 스텝 집합 + 전역 컨텍스트의 해시) 단위로 저장되며, purge 전까지 보존된다.
- 같은 plan_id 로 다시 실행하면 이미 성공한 스텝은 그대로 유지된다. (멱등 재개)
- 스텝은 claim 한 실행(run)을 owner 로 기록한다. 살아 있는 실행이 소유한 스텝은
  다른 실행의 prepare() 가 되돌리지 않는다.
"""

from __future__ import annotations

import fcntl
import json
import os
import socket
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from .errors import InvalidTransitionError
from .logging_utils import get_logger
from .models import ExecutionRecord, Plan, StepStatus, utcnow_iso


logger = get_logger(__name__)


S = StepStatus

ALLOWED_TRANSITIONS: Dict[StepStatus, Set[StepStatus]] = {
    S.PENDING: {S.READY, S.SKIPPED},
    S.READY: {S.RUNNING, S.SKIPPED},
    S.RUNNING: {S.SUCCEEDED, S.FAILED, S.SKIPPED},
    # 재시도(FAILED -> RUNNING) 와 취소 시 대기 중인 재시도 정리(FAILED -> SKIPPED)
    S.FAILED: {S.RUNNING, S.SKIPPED},
    S.SKIPPED: set(),
    # 롤백된 스텝은 다음 apply 에서 다시 실행되도록 PENDING 으로 돌아간다.
    S.SUCCEEDED: {S.PENDING},
}

# prepare() 에서 PENDING 으로 되돌리는 상태 (중단되었거나 미해결인 스텝)
_RESUMABLE = (S.READY, S.RUNNING, S.FAILED, S.SKIPPED)

_UNSET: Any = object()


class StateStore:
    """
    메모리 상의 기록 + 락을 관리하는 공통 구현.
    하위 클래스는 _guard/_load/_persist/_stored_plan_ids/_delete 와
    실행(run) 생존 여부 훅으로 영속화를 담당한다.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._plans: Dict[str, Dict[str, ExecutionRecord]] = {}
        self._live_runs: Set[str] = set()

    # ---- 영속화 훅 ----
    def _load(self, plan_id: str) -> Optional[Dict[str, ExecutionRecord]]:
        return None

    def _persist(self, plan_id: str) -> None:
        pass

    def _stored_plan_ids(self) -> List[str]:
        return []

    def _delete(self, plan_id: str) -> None:
        pass

    @contextmanager
    def _guard(self, plan_id: str) -> Iterator[Dict[str, ExecutionRecord]]:
        """plan_id 의 기록을 배타적으로 다루는 구간. 중첩 호출하지 않는다."""
        with self._lock:
            records = self._plans.get(plan_id)
            if records is None:
                records = self._load(plan_id) or {}
                self._plans[plan_id] = records
            yield records

    # ---- 실행(run) 소유권 ----
    def begin_run(self, run_id: str) -> None:
        with self._lock:
            self._live_runs.add(run_id)

    def end_run(self, run_id: str) -> None:
        with self._lock:
            self._live_runs.discard(run_id)

    def owner_is_live(self, owner: Optional[str]) -> bool:
        if not owner:
            return False
        with self._lock:
            return owner in self._live_runs

    @staticmethod
    def _get(records: Dict[str, ExecutionRecord], plan_id: str, step_id: str) -> ExecutionRecord:
        try:
            return records[step_id]
        except KeyError:
            raise KeyError(f"실행 기록이 없습니다: plan={plan_id} step={step_id}") from None

    # ---- 공개 API ----
    def prepare(self, plan: Plan) -> Dict[str, StepStatus]:
        """
        플랜의 실행 기록을 준비한다.

        - 기록이 없는 스텝은 PENDING 으로 생성
        - 중단/실패/스킵된 스텝은 PENDING 으로 되돌림 (재개 대상)
          단, 살아 있는 다른 실행이 소유한 스텝은 그대로 둔다.
        - SUCCEEDED 스텝은 유지

        Returns:
            준비 직전의 스텝별 상태 (새로 생성된 스텝은 포함하지 않음)
        """
        with self._guard(plan.plan_id) as records:
            previous: Dict[str, StepStatus] = {}
            now = utcnow_iso()
            for sid in plan.order:
                step = plan.steps[sid]
                rec = records.get(sid)
                if rec is None:
                    records[sid] = ExecutionRecord(
                        plan_id=plan.plan_id,
                        step_id=sid,
                        idempotency_key=step.idempotency_key,
                        history=[{"status": S.PENDING.value, "at": now}],
                    )
                    continue
                previous[sid] = rec.status
                if rec.status not in _RESUMABLE:
                    continue
                if self.owner_is_live(rec.owner):
                    logger.info("다른 실행(%s)이 처리 중인 스텝입니다: %s (%s)", rec.owner, sid, rec.status.value)
                    continue
                logger.info("재개 대상 스텝: %s (%s -> pending)", sid, rec.status.value)
                rec.status = S.PENDING
                rec.attempts = 0
                rec.note = None
                rec.owner = None
                rec.history.append({"status": S.PENDING.value, "at": now})
            self._persist(plan.plan_id)
            return previous

    def get_record(self, plan_id: str, step_id: str) -> ExecutionRecord:
        with self._guard(plan_id) as records:
            return ExecutionRecord.from_dict(self._get(records, plan_id, step_id).to_dict())

    def get_status(self, plan_id: str, step_id: str) -> StepStatus:
        with self._guard(plan_id) as records:
            return self._get(records, plan_id, step_id).status

    def records(self, plan_id: str) -> List[ExecutionRecord]:
        with self._guard(plan_id) as records:
            return [ExecutionRecord.from_dict(r.to_dict()) for r in records.values()]

    def transition(
        self,
        plan_id: str,
        step_id: str,
        expected: StepStatus,
        new: StepStatus,
        *,
        error: Any = _UNSET,
        output: Any = _UNSET,
        note: Any = _UNSET,
        owner: Any = _UNSET,
        count_attempt: bool = False,
    ) -> bool:
        """
        compare-and-swap 상태 전이.

        현재 상태가 expected 가 아니면 아무것도 바꾸지 않고 False(Conflict)를 리턴한다.
        허용되지 않는 전이는 InvalidTransitionError.
        """
        if new not in ALLOWED_TRANSITIONS[expected]:
            raise InvalidTransitionError(step_id, expected.value, new.value)

        with self._guard(plan_id) as records:
            rec = self._get(records, plan_id, step_id)
            if rec.status != expected:
                logger.debug(
                    "상태 전이 충돌: %s expected=%s actual=%s new=%s",
                    step_id,
                    expected.value,
                    rec.status.value,
                    new.value,
                )
                return False

            rec.status = new
            if count_attempt:
                rec.attempts += 1
            if error is not _UNSET:
                rec.last_error = error
            if output is not _UNSET:
                rec.output = output
            if note is not _UNSET:
                rec.note = note
            if owner is not _UNSET:
                rec.owner = owner
            rec.history.append({"status": new.value, "at": utcnow_iso()})
            self._persist(plan_id)
            return True

    def list_ready(self, plan: Plan) -> Set[str]:
        """의존성이 모두 SUCCEEDED 이고 자신은 PENDING 인 스텝 ID 집합."""
        with self._guard(plan.plan_id) as records:
            ready: Set[str] = set()
            for sid in plan.order:
                rec = records.get(sid)
                if rec is None or rec.status != S.PENDING:
                    continue
                if all(
                    dep in records and records[dep].status == S.SUCCEEDED
                    for dep in plan.steps[sid].depends_on
                ):
                    ready.add(sid)
            return ready

    def has_succeeded_key(self, plan_id: str, idempotency_key: str, *, exclude: Iterable[str] = ()) -> bool:
        """
        같은 plan_id 안에서 같은 멱등 키로 이미 성공한 실행이 있는지 확인한다.
        다른 plan_id 의 기록은 보지 않는다.
        """
        excluded = set(exclude)
        with self._guard(plan_id) as records:
            return any(
                r.idempotency_key == idempotency_key and r.status == S.SUCCEEDED
                for sid, r in records.items()
                if sid not in excluded
            )

    def list_plans(self) -> List[str]:
        with self._lock:
            ids = set(self._stored_plan_ids())
            ids.update(pid for pid, recs in self._plans.items() if recs)
            return sorted(ids)

    def purge(self, plan_id: str) -> bool:
        with self._lock:
            existed = plan_id in self.list_plans()
            self._plans.pop(plan_id, None)
            self._delete(plan_id)
            if existed:
                logger.info("플랜 실행 기록을 삭제했습니다: %s", plan_id)
            return existed


class InMemoryStateStore(StateStore):
    """테스트/일회성 실행용. 프로세스 종료 시 기록이 사라진다."""


class FileStateStore(StateStore):
    """
    plan_id 별 JSON 파일(<state_dir>/<plan_id>.json)에 기록을 저장한다.

    - 쓰기는 임시 파일 + os.replace 로 원자적으로 수행한다.
    - 플랜 단위 조회/전이는 <plan_id>.lock 에 대한 flock 을 잡은 뒤 파일을 다시 읽어서 한다.
      같은 state_dir 을 쓰는 여러 프로세스 사이에서도 CAS 가 유지된다.
    - 실행 중인 run 은 <state_dir>/.runs/<run_id>.json (pid, host) 로 표시한다.
    """

    def __init__(self, state_dir: str) -> None:
        super().__init__()
        self.state_dir = state_dir

    def _path(self, plan_id: str) -> str:
        return os.path.join(self.state_dir, f"{plan_id}.json")

    def _lock_path(self, plan_id: str) -> str:
        return os.path.join(self.state_dir, f"{plan_id}.lock")

    def _run_path(self, run_id: str) -> str:
        return os.path.join(self.state_dir, ".runs", f"{run_id}.json")

    @contextmanager
    def _guard(self, plan_id: str) -> Iterator[Dict[str, ExecutionRecord]]:
        with self._lock:
            os.makedirs(self.state_dir, exist_ok=True)
            with open(self._lock_path(plan_id), "a+", encoding="utf-8") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    # 다른 프로세스가 바꿨을 수 있으므로 항상 파일 기준으로 다시 읽는다.
                    records = self._load(plan_id) or {}
                    self._plans[plan_id] = records
                    yield records
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self, plan_id: str) -> Optional[Dict[str, ExecutionRecord]]:
        path = self._path(plan_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return {
            sid: ExecutionRecord.from_dict(raw)
            for sid, raw in (data.get("records") or {}).items()
        }

    def _persist(self, plan_id: str) -> None:
        os.makedirs(self.state_dir, exist_ok=True)
        records = self._plans.get(plan_id) or {}
        payload = {
            "plan_id": plan_id,
            "updated_at": utcnow_iso(),
            "records": {sid: rec.to_dict() for sid, rec in records.items()},
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=f".{plan_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._path(plan_id))
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _stored_plan_ids(self) -> List[str]:
        if not os.path.isdir(self.state_dir):
            return []
        return [
            name[: -len(".json")]
            for name in os.listdir(self.state_dir)
            if name.endswith(".json") and not name.startswith(".")
        ]

    def _delete(self, plan_id: str) -> None:
        # .lock 파일은 남겨 둔다. (다른 프로세스가 잡고 있을 수 있음)
        path = self._path(plan_id)
        if os.path.exists(path):
            os.unlink(path)

    def begin_run(self, run_id: str) -> None:
        super().begin_run(run_id)
        path = self._run_path(run_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"run_id": run_id, "pid": os.getpid(), "host": socket.gethostname(), "started_at": utcnow_iso()}, f)

    def end_run(self, run_id: str) -> None:
        super().end_run(run_id)
        path = self._run_path(run_id)
        if os.path.exists(path):
            os.unlink(path)

    def owner_is_live(self, owner: Optional[str]) -> bool:
        """
        run 표시 파일이 있고 그 프로세스가 살아 있으면 live.
        다른 호스트의 run 은 확인할 수 없으므로 live 로 본다.
        """
        if super().owner_is_live(owner):
            return True
        if not owner:
            return False
        path = self._run_path(owner)
        if not os.path.exists(path):
            return False
        try:
            with open(path, "r", encoding="utf-8") as f:
                marker = json.load(f)
        except (OSError, ValueError):
            return False
        if marker.get("host") != socket.gethostname():
            return True
        try:
            os.kill(int(marker.get("pid", 0)), 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except (TypeError, ValueError):
            return False
        return True


def create_state_store(backend: str, state_dir: str) -> StateStore:
    if backend == "memory":
        return InMemoryStateStore()
    if backend == "file":
        return FileStateStore(state_dir)
    raise ValueError(f"알 수 없는 상태 저장소 백엔드입니다: {backend!r} (file | memory 중 하나)")
