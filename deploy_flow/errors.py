"""
errors
------

deploy_flow 에서 사용하는 예외 계층.

- ValidationError: 플랜 컴파일 단계의 치명적 오류 (어떤 스텝도 실행하지 않음)
- TransientStepError: 네트워크/타임아웃/쓰로틀링 등 재시도 가능한 오류
- PermanentStepError: 잘못된 입력, 권한 오류 등 재시도하지 않는 오류
- SecretUnavailableError: 기본적으로 Permanent, retryable=True 이면 재시도
- VerificationTimeout: 모든 스텝은 성공했지만 헬스체크가 준비되지 않음

어떤 오류 메시지에도 시크릿 값은 포함하지 않는다. (이름만 허용)
"""

from __future__ import annotations

from typing import Optional, Sequence


class DeployFlowError(Exception):
    """deploy_flow 공통 베이스 예외."""


# -----------------------------
# 플랜 검증 오류
# -----------------------------
class ValidationError(DeployFlowError):
    """플랜 컴파일 시점 오류."""


class ManifestError(ValidationError):
    """매니페스트 파일을 읽거나 해석할 수 없음."""


class DuplicateStepError(ValidationError):
    def __init__(self, step_id: str) -> None:
        super().__init__(f"중복된 스텝 ID 입니다: {step_id}")
        self.step_id = step_id


class UnknownDependencyError(ValidationError):
    def __init__(self, step_id: str, dependency: str) -> None:
        super().__init__(
            f"스텝 {step_id!r} 가 존재하지 않는 스텝 {dependency!r} 에 의존합니다."
        )
        self.step_id = step_id
        self.dependency = dependency


class CycleError(ValidationError):
    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__("의존성 순환이 있습니다: " + " -> ".join(cycle))
        self.cycle = list(cycle)


class UnknownStepKindError(ValidationError):
    def __init__(self, step_id: str, kind: str) -> None:
        super().__init__(f"스텝 {step_id!r} 의 kind {kind!r} 에 등록된 어댑터가 없습니다.")
        self.step_id = step_id
        self.kind = kind


# -----------------------------
# 스텝 실행 오류
# -----------------------------
class StepError(DeployFlowError):
    """어댑터가 보고하는 스텝 실행 오류의 베이스."""

    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class TransientStepError(StepError):
    retryable = True


class PermanentStepError(StepError):
    retryable = False


class SecretUnavailableError(StepError):
    """
    시크릿을 해석하지 못한 경우.

    메시지에는 시크릿 '이름'만 들어가며, 값은 절대 포함하지 않는다.
    """

    def __init__(self, name: str, reason: str = "", *, retryable: bool = False) -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(f"시크릿을 가져올 수 없습니다: {name}{detail}")
        self.name = name
        self.reason = reason
        self.retryable = retryable


class UnknownAdapterError(PermanentStepError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"등록되지 않은 스텝 kind 입니다: {kind}")
        self.step_kind = kind


# -----------------------------
# 상태/검증/내부 오류
# -----------------------------
class InvalidTransitionError(DeployFlowError):
    def __init__(self, step_id: str, current: str, new: str) -> None:
        super().__init__(f"허용되지 않는 상태 전이입니다: {step_id} {current} -> {new}")
        self.step_id = step_id
        self.current = current
        self.new = new


class VerificationTimeout(DeployFlowError):
    def __init__(self, target: str, elapsed: float, last_observation: Optional[str] = None) -> None:
        msg = f"헬스체크가 {elapsed:0.1f}초 안에 준비 상태가 되지 않았습니다: {target}"
        if last_observation:
            msg += f" (마지막 관측: {last_observation})"
        super().__init__(msg)
        self.target = target
        self.elapsed = elapsed
        self.last_observation = last_observation


class InvariantViolation(DeployFlowError):
    """검증된 플랜에서는 발생하면 안 되는 상태 (예: 진행 불가 데드락)."""
