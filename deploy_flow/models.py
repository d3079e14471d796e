"""
models
------

플랜/스텝/실행 기록 등 오케스트레이터 전반에서 공유하는 데이터 모델.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class StepStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def default_idempotency_key(step_id: str, kind: str, params: Mapping[str, Any]) -> str:
    """스텝 ID + kind + 파라미터로부터 결정적인 멱등 키를 만든다."""
    digest = hashlib.sha256(canonical_json([step_id, kind, dict(params)]).encode("utf-8"))
    return digest.hexdigest()[:32]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 60_000
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"maxAttempts 는 1 이상이어야 합니다: {self.max_attempts}")
        if self.backoff_base_ms < 0 or self.backoff_cap_ms < 0:
            raise ValueError("backoffBaseMs/backoffCapMs 는 음수일 수 없습니다.")


@dataclass(frozen=True)
class Step:
    id: str
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    idempotency_key: str = ""
    timeout_ms: Optional[int] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    secrets: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # frozen 이므로 object.__setattr__ 로 기본 키를 채운다.
        if not self.idempotency_key:
            object.__setattr__(
                self,
                "idempotency_key",
                default_idempotency_key(self.id, self.kind, self.params),
            )

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.timeout_ms is None:
            return None
        return self.timeout_ms / 1000.0

    def identity(self) -> Dict[str, Any]:
        """플랜 ID 계산에 쓰이는 선언부. 재시도/타임아웃 설정은 포함하지 않는다."""
        return {
            "id": self.id,
            "kind": self.kind,
            "params": self.params,
            "dependsOn": sorted(self.depends_on),
            "idempotencyKey": self.idempotency_key,
            "secrets": sorted(self.secrets),
        }


@dataclass(frozen=True)
class GlobalContext:
    """컴파일 시점에 확정되는 전역 환경 값. 이후에는 읽기 전용."""

    region: str = ""
    environment: str = ""
    resource_group: str = ""
    registry: str = ""
    node_affinity: str = ""
    domain_suffix: str = ""
    extra: Tuple[Tuple[str, str], ...] = ()

    def as_dict(self) -> Dict[str, str]:
        values = {
            "region": self.region,
            "environment": self.environment,
            "resource_group": self.resource_group,
            "registry": self.registry,
            "node_affinity": self.node_affinity,
            "domain_suffix": self.domain_suffix,
        }
        values.update(dict(self.extra))
        return values

    def as_env(self, prefix: str = "DEPLOY_") -> Dict[str, str]:
        return {f"{prefix}{k.upper()}": v for k, v in self.as_dict().items() if v}


@dataclass(frozen=True)
class HealthSignal:
    url: str
    expect: Dict[str, Any] = field(default_factory=dict)
    interval_seconds: float = 5.0
    timeout_seconds: float = 300.0


@dataclass(frozen=True)
class Plan:
    plan_id: str
    steps: Dict[str, Step]
    context: GlobalContext
    order: Tuple[str, ...]
    closures: Dict[str, frozenset]
    dependents: Dict[str, Tuple[str, ...]]
    health_signal: Optional[HealthSignal] = None

    def __hash__(self) -> int:
        return hash(self.plan_id)

    def step(self, step_id: str) -> Step:
        return self.steps[step_id]

    def downstream(self, step_id: str) -> List[str]:
        """step_id 에 (전이적으로) 의존하는 스텝들을 토폴로지 순서로 반환."""
        return [sid for sid in self.order if step_id in self.closures[sid]]


@dataclass
class ExecutionRecord:
    plan_id: str
    step_id: str
    idempotency_key: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    last_error: Optional[Dict[str, Any]] = None
    output: Optional[str] = None
    note: Optional[str] = None
    # 이 스텝을 claim 한 실행(run) ID. 살아 있는 실행이 소유한 스텝은 다른 실행이 재개하지 않는다.
    owner: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "step_id": self.step_id,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "output": self.output,
            "note": self.note,
            "owner": self.owner,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionRecord":
        return cls(
            plan_id=data["plan_id"],
            step_id=data["step_id"],
            idempotency_key=data.get("idempotency_key", ""),
            status=StepStatus(data.get("status", "pending")),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            output=data.get("output"),
            note=data.get("note"),
            owner=data.get("owner"),
            history=list(data.get("history") or []),
        )

    @property
    def updated_at(self) -> Optional[str]:
        if not self.history:
            return None
        return self.history[-1]["at"]


@dataclass(frozen=True)
class StepResult:
    """어댑터가 반환하는 성공 결과."""

    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
