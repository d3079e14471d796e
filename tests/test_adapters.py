from __future__ import annotations

from typing import Any, Dict, List

import pytest

from deploy_flow.adapters import ApplyManifestAdapter, CommandAdapter, NoopAdapter, default_registry
from deploy_flow.errors import PermanentStepError, UnknownAdapterError
from deploy_flow.models import GlobalContext, Step
from deploy_flow.registry import AdapterRegistry, StepContext, supports_rollback
from deploy_flow.subprocess_utils import RunResult


class RecordingRunner:
    def __init__(self, stdout: str = "") -> None:
        self.stdout = stdout
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, cmd, **kwargs) -> RunResult:  # noqa: ANN001, ANN003
        self.calls.append({"cmd": list(cmd), **kwargs})
        return RunResult(returncode=0, stdout=self.stdout, stderr="")


def _ctx(**kwargs) -> StepContext:  # noqa: ANN003
    context = GlobalContext(region="koreacentral", environment="prod", registry="myacr.azurecr.io")
    kwargs.setdefault("plan_id", "p-123")
    return StepContext(context=context, **kwargs)


def test_command_adapter_substitutes_context_in_argv() -> None:
    runner = RecordingRunner(stdout="created\nserver ready\n")
    step = Step(
        id="import-image",
        kind="command",
        params={"command": ["az", "acr", "import", "--name", "${registry}", "--tag", "app:${plan_id}", "${unknown}"]},
    )

    result = CommandAdapter(runner).execute(step, _ctx(timeout_seconds=30))

    call = runner.calls[0]
    assert call["cmd"] == ["az", "acr", "import", "--name", "myacr.azurecr.io", "--tag", "app:p-123", "${unknown}"]
    assert call["timeout"] == 30
    assert call["env"]["DEPLOY_REGION"] == "koreacentral"
    assert call["env"]["DEPLOY_STEP_ID"] == "import-image"
    assert result.message == "server ready"


def test_command_adapter_passes_secrets_only_through_env() -> None:
    runner = RecordingRunner()
    step = Step(
        id="migrate",
        kind="run-migration",
        params={"command": "alembic upgrade head", "secretEnv": {"DATABASE_PASSWORD": "db-password"}},
        secrets=("db-password",),
    )

    CommandAdapter(runner).execute(step, _ctx(secrets={"db-password": "s3cr3t-pw"}))

    call = runner.calls[0]
    assert call["cmd"] == ["alembic", "upgrade", "head"]
    assert call["env"]["DATABASE_PASSWORD"] == "s3cr3t-pw"
    assert "s3cr3t-pw" not in " ".join(call["cmd"])


def test_command_adapter_rejects_undeclared_secret() -> None:
    step = Step(
        id="migrate",
        kind="command",
        params={"command": ["true"], "secretEnv": {"TOKEN": "tunnel-token"}},
    )

    with pytest.raises(PermanentStepError):
        CommandAdapter(RecordingRunner()).execute(step, _ctx())


def test_command_adapter_rollback_requires_rollback_command() -> None:
    runner = RecordingRunner()
    step = Step(id="db", kind="provision-db", params={"command": ["az", "postgres", "create"]})

    with pytest.raises(PermanentStepError):
        CommandAdapter(runner).rollback(step, _ctx())
    assert runner.calls == []


def test_apply_manifest_builds_kubectl_commands() -> None:
    runner = RecordingRunner()
    adapter = ApplyManifestAdapter(runner)
    step = Step(
        id="deploy-app",
        kind="apply-manifest",
        params={"path": "k8s/${environment}/app.yaml", "namespace": "web", "kubeContext": "aks-prod"},
    )

    adapter.execute(step, _ctx())
    adapter.rollback(step, _ctx())

    assert runner.calls[0]["cmd"] == [
        "kubectl", "apply", "--context=aks-prod", "--namespace=web", "-f", "k8s/prod/app.yaml",
    ]
    assert runner.calls[1]["cmd"] == [
        "kubectl", "delete", "--context=aks-prod", "--namespace=web", "-f", "k8s/prod/app.yaml", "--ignore-not-found",
    ]


def test_apply_manifest_requires_path() -> None:
    with pytest.raises(PermanentStepError):
        ApplyManifestAdapter(RecordingRunner()).execute(Step(id="x", kind="apply-manifest"), _ctx())


def test_default_registry_kinds() -> None:
    registry = default_registry()

    assert {"noop", "command", "provision-db", "import-image", "run-migration", "apply-manifest"} <= set(registry.kinds())
    assert supports_rollback(registry.get("apply-manifest"))


def test_registry_rejects_duplicates_and_unknown_kinds() -> None:
    registry = AdapterRegistry()
    registry.register("noop", NoopAdapter())

    with pytest.raises(ValueError):
        registry.register("noop", NoopAdapter())
    with pytest.raises(TypeError):
        registry.register("bad", object())  # type: ignore[arg-type]
    with pytest.raises(UnknownAdapterError):
        registry.get("helm-release")
    assert "noop" in registry
