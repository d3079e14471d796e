from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, List

from dotenv import load_dotenv

from .models import GlobalContext


ENV_FILES_DEFAULT_ORDER = [".env", ".env.deploy"]

STATE_BACKENDS = ("file", "memory")
SECRET_BACKENDS = ("env", "gcp")


def load_env_files(base_dir: str = ".",
                   files: Optional[List[str]] = None) -> None:
    """
    주어진 디렉토리에서 .env 계열 파일을 순서대로 로드한다.
    후순위 파일이 같은 키를 덮어쓴다.

    .env.secrets 는 여기서 로드하지 않는다. (EnvSecretSource 가 스텝 실행 시점에만 읽음)
    """
    order = files or ENV_FILES_DEFAULT_ORDER
    for name in order:
        path = os.path.join(base_dir, name)
        if os.path.exists(path):
            load_dotenv(path, override=True)


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y"}


def _get_int(name: str, default: int, errors: List[str]) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{name}={raw!r} (정수가 아님)")
        return default


def _get_float(name: str, default: float, errors: List[str]) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        errors.append(f"{name}={raw!r} (숫자가 아님)")
        return default


@dataclass
class OrchestratorConfig:
    # 플랜 전역 컨텍스트
    region: str = ""
    environment: str = ""
    resource_group: str = ""
    registry: str = ""
    node_affinity: str = ""
    domain_suffix: str = ""

    # 상태 저장소
    state_backend: str = "file"
    state_dir: str = ".deploy-flow/state"

    # 실행
    max_concurrency: int = 4

    # 시크릿
    secret_backend: str = "env"
    secret_prefix: str = ""
    secret_gcp_project_id: Optional[str] = None
    secrets_file: str = ".env.secrets"

    # 검증(헬스체크)
    verify_enabled: bool = True
    verify_url: Optional[str] = None
    verify_interval_seconds: float = 5.0
    verify_timeout_seconds: float = 300.0

    def global_context(self) -> GlobalContext:
        return GlobalContext(
            region=self.region,
            environment=self.environment,
            resource_group=self.resource_group,
            registry=self.registry,
            node_affinity=self.node_affinity,
            domain_suffix=self.domain_suffix,
        )

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        errors: List[str] = []

        cfg = cls(
            region=os.getenv("DEPLOY_REGION", ""),
            environment=os.getenv("DEPLOY_ENVIRONMENT", ""),
            resource_group=os.getenv("DEPLOY_RESOURCE_GROUP", ""),
            registry=os.getenv("DEPLOY_REGISTRY", ""),
            node_affinity=os.getenv("DEPLOY_NODE_AFFINITY", ""),
            domain_suffix=os.getenv("DEPLOY_DOMAIN_SUFFIX", ""),
            state_backend=os.getenv("DEPLOY_STATE_BACKEND", "file").lower(),
            state_dir=os.getenv("DEPLOY_STATE_DIR", ".deploy-flow/state"),
            max_concurrency=_get_int("DEPLOY_MAX_CONCURRENCY", 4, errors),
            secret_backend=os.getenv("SECRET_BACKEND", "env").lower(),
            secret_prefix=os.getenv("SECRET_PREFIX", ""),
            secret_gcp_project_id=os.getenv("SECRET_GCP_PROJECT_ID"),
            secrets_file=os.getenv("SECRETS_FILE", ".env.secrets"),
            verify_enabled=_get_bool("VERIFY_ENABLED", True),
            verify_url=os.getenv("VERIFY_URL") or None,
            verify_interval_seconds=_get_float("VERIFY_INTERVAL_SECONDS", 5.0, errors),
            verify_timeout_seconds=_get_float("VERIFY_TIMEOUT_SECONDS", 300.0, errors),
        )

        if cfg.max_concurrency < 1:
            errors.append(f"DEPLOY_MAX_CONCURRENCY={cfg.max_concurrency} (1 이상이어야 함)")
        if cfg.state_backend not in STATE_BACKENDS:
            errors.append(
                f"DEPLOY_STATE_BACKEND={cfg.state_backend!r} ({' | '.join(STATE_BACKENDS)} 중 하나)"
            )
        if cfg.secret_backend not in SECRET_BACKENDS:
            errors.append(
                f"SECRET_BACKEND={cfg.secret_backend!r} ({' | '.join(SECRET_BACKENDS)} 중 하나)"
            )
        elif cfg.secret_backend == "gcp" and not cfg.secret_gcp_project_id:
            errors.append("SECRET_BACKEND=gcp 이면 SECRET_GCP_PROJECT_ID 가 필요합니다")

        if errors:
            raise ValueError("잘못된 환경설정이 있습니다: " + ", ".join(errors))

        return cfg
