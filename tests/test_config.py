import pytest

from deploy_flow.config import OrchestratorConfig, load_env_files


_ENV_KEYS = [
    "DEPLOY_REGION",
    "DEPLOY_ENVIRONMENT",
    "DEPLOY_RESOURCE_GROUP",
    "DEPLOY_REGISTRY",
    "DEPLOY_NODE_AFFINITY",
    "DEPLOY_DOMAIN_SUFFIX",
    "DEPLOY_STATE_BACKEND",
    "DEPLOY_STATE_DIR",
    "DEPLOY_MAX_CONCURRENCY",
    "SECRET_BACKEND",
    "SECRET_PREFIX",
    "SECRET_GCP_PROJECT_ID",
    "SECRETS_FILE",
    "VERIFY_ENABLED",
    "VERIFY_URL",
    "VERIFY_INTERVAL_SECONDS",
    "VERIFY_TIMEOUT_SECONDS",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_env() -> None:
    cfg = OrchestratorConfig.from_env()

    assert cfg.state_backend == "file"
    assert cfg.max_concurrency == 4
    assert cfg.secret_backend == "env"
    assert cfg.verify_url is None


def test_global_context_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOY_REGION", "koreacentral")
    monkeypatch.setenv("DEPLOY_ENVIRONMENT", "prod")
    monkeypatch.setenv("DEPLOY_REGISTRY", "myacr.azurecr.io")

    ctx = OrchestratorConfig.from_env().global_context()

    assert ctx.region == "koreacentral"
    assert ctx.environment == "prod"
    assert ctx.registry == "myacr.azurecr.io"


def test_invalid_values_are_reported_together(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOY_MAX_CONCURRENCY", "many")
    monkeypatch.setenv("DEPLOY_STATE_BACKEND", "redis")

    with pytest.raises(ValueError) as excinfo:
        OrchestratorConfig.from_env()

    message = str(excinfo.value)
    assert "DEPLOY_MAX_CONCURRENCY" in message
    assert "DEPLOY_STATE_BACKEND" in message


def test_zero_concurrency_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEPLOY_MAX_CONCURRENCY", "0")

    with pytest.raises(ValueError):
        OrchestratorConfig.from_env()


def test_gcp_secret_backend_requires_project(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SECRET_BACKEND", "gcp")

    with pytest.raises(ValueError) as excinfo:
        OrchestratorConfig.from_env()

    assert "SECRET_GCP_PROJECT_ID" in str(excinfo.value)


def test_env_files_later_file_wins(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:  # noqa: ANN001
    (tmp_path / ".env").write_text("DEPLOY_REGION=eastus\nDEPLOY_ENVIRONMENT=dev\n", encoding="utf-8")
    (tmp_path / ".env.deploy").write_text("DEPLOY_REGION=koreacentral\n", encoding="utf-8")

    load_env_files(str(tmp_path))
    cfg = OrchestratorConfig.from_env()

    assert cfg.region == "koreacentral"
    assert cfg.environment == "dev"


@pytest.mark.parametrize("raw,expected", [("false", False), ("0", False), ("no", False), ("true", True), ("Y", True)])
def test_verify_enabled_toggle(monkeypatch: pytest.MonkeyPatch, raw: str, expected: bool) -> None:
    monkeypatch.setenv("VERIFY_ENABLED", raw)

    assert OrchestratorConfig.from_env().verify_enabled is expected


def test_verify_enabled_defaults_to_true() -> None:
    assert OrchestratorConfig.from_env().verify_enabled is True
