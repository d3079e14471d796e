"""
pytest 설정:

로컬 작업 환경에 설치된 다른 버전의 deploy_flow 패키지가 존재할 때,
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.
"""

from __future__ import annotations

import os
import sys
import threading
from typing import Callable, Dict, List, Optional

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


class FakeAdapter:
    """
    호출 기록을 남기는 테스트용 어댑터.

    behaviors[step_id] 에 (step, ctx) -> StepResult 콜러블을 넣으면 해당 스텝의 동작을 바꿀 수 있다.
    """

    def __init__(self, behaviors: Optional[Dict[str, Callable]] = None) -> None:
        self.behaviors = behaviors or {}
        self.calls: List[str] = []
        self.rollbacks: List[str] = []
        self.seen_secrets: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def execute(self, step, ctx):  # noqa: ANN001, ANN201
        from deploy_flow.models import StepResult

        with self._lock:
            self.calls.append(step.id)
            self.seen_secrets[step.id] = dict(ctx.secrets)
        behavior = self.behaviors.get(step.id)
        if behavior is not None:
            return behavior(step, ctx)
        return StepResult(message=f"{step.id} done")

    def rollback(self, step, ctx):  # noqa: ANN001, ANN201
        from deploy_flow.models import StepResult

        with self._lock:
            self.rollbacks.append(step.id)
        return StepResult(message=f"{step.id} removed")


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def registry(fake_adapter: FakeAdapter):  # noqa: ANN201
    from deploy_flow.registry import AdapterRegistry

    reg = AdapterRegistry()
    reg.register("fake", fake_adapter)
    return reg


@pytest.fixture
def store():  # noqa: ANN201
    from deploy_flow.state_store import InMemoryStateStore

    return InMemoryStateStore()


class DictSecretSource:
    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self.values = dict(values or {})
        self.lookups: List[str] = []

    def get(self, name: str) -> str:
        from deploy_flow.errors import SecretUnavailableError

        self.lookups.append(name)
        if name not in self.values:
            raise SecretUnavailableError(name, "not declared")
        return self.values[name]


@pytest.fixture
def secret_source() -> DictSecretSource:
    return DictSecretSource({"db-password": "s3cr3t-pw", "tunnel-token": "tok-abc123"})


@pytest.fixture
def broker(secret_source: DictSecretSource):  # noqa: ANN201
    from deploy_flow.secret_broker import SecretBroker

    return SecretBroker(secret_source)


def make_step(step_id: str, *deps: str, kind: str = "fake", **kwargs):  # noqa: ANN003, ANN201
    from deploy_flow.models import Step

    return Step(id=step_id, kind=kind, depends_on=tuple(deps), **kwargs)
