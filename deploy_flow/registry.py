"""
registry
--------

스텝 kind -> 어댑터 매핑을 관리하는 Step Registry.

어댑터는 외부 협력자(클라우드 API, kubectl 등)에 대한 얇은 인터페이스이며,
오케스트레이터는 execute(step, context) / rollback(step, context) 만 호출한다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, runtime_checkable

from .errors import UnknownAdapterError
from .logging_utils import get_logger
from .models import GlobalContext, Step, StepResult


logger = get_logger(__name__)


@dataclass(frozen=True)
class StepContext:
    """어댑터 호출 한 번에 전달되는 실행 컨텍스트."""

    plan_id: str
    context: GlobalContext
    attempt: int = 1
    timeout_seconds: Optional[float] = None
    secrets: Mapping[str, str] = field(default_factory=dict)


@runtime_checkable
class StepAdapter(Protocol):
    def execute(self, step: Step, ctx: StepContext) -> StepResult:
        """
        스텝을 실행한다.

        실패 시 TransientStepError(재시도 가능) 또는 PermanentStepError 를 던진다.
        """
        ...


def supports_rollback(adapter: object) -> bool:
    return callable(getattr(adapter, "rollback", None))


class AdapterRegistry:
    def __init__(self) -> None:
        self._adapters: Dict[str, StepAdapter] = {}

    def register(self, kind: str, adapter: StepAdapter, *, replace: bool = False) -> None:
        if not isinstance(adapter, StepAdapter):
            raise TypeError(f"어댑터에 execute(step, ctx) 가 없습니다: {adapter!r}")
        if kind in self._adapters and not replace:
            raise ValueError(f"이미 등록된 스텝 kind 입니다: {kind}")
        self._adapters[kind] = adapter
        logger.debug("어댑터 등록: %s -> %s", kind, type(adapter).__name__)

    def get(self, kind: str) -> StepAdapter:
        try:
            return self._adapters[kind]
        except KeyError:
            raise UnknownAdapterError(kind) from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._adapters

    def kinds(self) -> List[str]:
        return sorted(self._adapters)
