"""
secret_broker
-------------

스텝 실행 시점에 시크릿 참조(이름)를 실제 값으로 해석하는 Secret Broker.

- 값은 해당 스텝 실행(scope) 동안만 메모리에 존재하며 캐시하지 않는다.
- 실행 기록/로그/에러 메시지에는 이름만 남기고 값은 절대 남기지 않는다.
- 매번 소스를 다시 조회하므로 로테이션된 값은 플랜 재컴파일 없이 반영된다.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Mapping, Optional, Protocol

from dotenv import dotenv_values
from google.api_core import exceptions as gexc

from .errors import SecretUnavailableError
from .logging_utils import get_logger


logger = get_logger(__name__)

REDACTED = "***"


class SecretSource(Protocol):
    def get(self, name: str) -> str:
        """name 에 해당하는 값을 리턴하거나 SecretUnavailableError 를 던진다."""
        ...


def env_key_for(name: str, prefix: str = "") -> str:
    """'db-password' -> 'DB_PASSWORD' (prefix 포함)"""
    return prefix + name.upper().replace("-", "_").replace(".", "_")


class EnvSecretSource:
    """
    프로세스 환경변수와 로컬 .env.secrets 파일에서 시크릿을 읽는다.
    환경변수가 파일보다 우선한다. 파일은 조회할 때마다 다시 읽는다.
    """

    def __init__(self, base_dir: str = ".", filename: str = ".env.secrets", prefix: str = "") -> None:
        self.path = os.path.join(base_dir, filename)
        self.prefix = prefix

    def _file_values(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        return {k: v for k, v in dotenv_values(dotenv_path=self.path).items() if v is not None}

    def get(self, name: str) -> str:
        key = env_key_for(name, self.prefix)
        value = os.environ.get(key)
        if value is None:
            value = self._file_values().get(key)
        if value is None or value == "":
            raise SecretUnavailableError(name, f"{key} 가 환경변수/{os.path.basename(self.path)} 에 없습니다")
        return value


class GcpSecretManagerSource:
    """
    GCP Secret Manager 의 최신 버전(versions/latest)을 읽는다.
    """

    def __init__(self, project_id: str, prefix: str = "", client=None) -> None:  # noqa: ANN001
        self.project_id = project_id
        self.prefix = prefix
        self._client = client

    def _get_client(self):  # noqa: ANN202
        if self._client is None:
            from google.cloud import secretmanager

            self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def get(self, name: str) -> str:
        secret_id = f"{self.prefix}{name}" if self.prefix else name
        version = f"projects/{self.project_id}/secrets/{secret_id}/versions/latest"
        try:
            response = self._get_client().access_secret_version(name=version)
        except gexc.NotFound as e:
            raise SecretUnavailableError(name, "Secret Manager 에 없음") from e
        except gexc.PermissionDenied as e:
            raise SecretUnavailableError(name, "Secret Manager 접근 거부") from e
        except (gexc.ServiceUnavailable, gexc.DeadlineExceeded, gexc.TooManyRequests) as e:
            raise SecretUnavailableError(name, "Secret Manager 일시 장애", retryable=True) from e
        except gexc.GoogleAPICallError as e:
            raise SecretUnavailableError(name, f"Secret Manager 오류 (code={e.code})") from e

        return response.payload.data.decode("utf-8")


def redact(text: Optional[str], values: Iterable[str]) -> Optional[str]:
    """text 안에 포함된 시크릿 값을 REDACTED 로 치환한다. 긴 값부터 처리한다."""
    if not text:
        return text
    for value in sorted({v for v in values if v}, key=len, reverse=True):
        text = text.replace(value, REDACTED)
    return text


class SecretScope(Mapping[str, str]):
    """
    한 번의 스텝 실행 동안만 유효한 해석된 시크릿 묶음.
    scope 가 끝나면 값이 비워진다.
    """

    def __init__(self, values: Dict[str, str]) -> None:
        self._values = values

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SecretScope(names={sorted(self._values)})"

    def redact(self, text: Optional[str]) -> Optional[str]:
        return redact(text, self._values.values())

    def clear(self) -> None:
        self._values.clear()


class SecretBroker:
    def __init__(self, source: SecretSource) -> None:
        self._source = source

    def resolve(self, name: str) -> str:
        logger.debug("시크릿 해석: %s", name)
        try:
            return self._source.get(name)
        except SecretUnavailableError:
            raise
        except Exception as e:  # noqa: BLE001
            # 소스 구현의 예외 메시지에 값이 섞일 수 있으므로 이름만 남긴다.
            raise SecretUnavailableError(name, type(e).__name__) from None

    @contextmanager
    def scope(self, names: Iterable[str]) -> Iterator[SecretScope]:
        scope = SecretScope({name: self.resolve(name) for name in names})
        try:
            yield scope
        finally:
            scope.clear()


def create_secret_broker(
    backend: str,
    *,
    base_dir: str = ".",
    secrets_file: str = ".env.secrets",
    prefix: str = "",
    gcp_project_id: Optional[str] = None,
) -> SecretBroker:
    if backend == "env":
        return SecretBroker(EnvSecretSource(base_dir, secrets_file, prefix))
    if backend == "gcp":
        if not gcp_project_id:
            raise ValueError("SECRET_BACKEND=gcp 이면 SECRET_GCP_PROJECT_ID 가 필요합니다.")
        return SecretBroker(GcpSecretManagerSource(gcp_project_id, prefix))
    raise ValueError(f"알 수 없는 시크릿 백엔드입니다: {backend!r} (env | gcp 중 하나)")
