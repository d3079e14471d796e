"""
manifest
--------

선언적 스텝 매니페스트(YAML/JSON)를 읽어 Step 목록으로 변환한다.

형식::

    context:
      region: koreacentral
    verify:
      url: https://app.example.com/healthz
      expect: {status: ok}
    steps:
      - id: provision-db
        kind: command
        params: {command: [az, postgres, flexible-server, create, ...]}
        retry: {maxAttempts: 3, backoffBaseMs: 2000}
        timeoutMs: 900000
      - id: create-secret
        kind: apply-manifest
        dependsOn: [provision-db]
        secrets: [db-password]

최상위가 리스트이면 steps 만 선언한 것으로 본다.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ManifestError
from .models import GlobalContext, HealthSignal, RetryPolicy, Step
from .logging_utils import get_logger


logger = get_logger(__name__)

_CONTEXT_FIELDS = ("region", "environment", "resource_group", "registry", "node_affinity", "domain_suffix")
_CONTEXT_ALIASES = {
    "resourceGroup": "resource_group",
    "nodeAffinity": "node_affinity",
    "domainSuffix": "domain_suffix",
    "env": "environment",
}


@dataclass
class Manifest:
    steps: List[Step]
    context: Dict[str, str] = field(default_factory=dict)
    health_signal: Optional[HealthSignal] = None

    def merged_context(self, base: GlobalContext) -> GlobalContext:
        """환경변수 기반 컨텍스트 위에 매니페스트 context 를 덮어쓴다."""
        known: Dict[str, str] = {}
        extra: Dict[str, str] = dict(base.extra)
        for key, value in self.context.items():
            name = _CONTEXT_ALIASES.get(key, key)
            if name in _CONTEXT_FIELDS:
                known[name] = value
            else:
                extra[name] = value
        return replace(base, extra=tuple(sorted(extra.items())), **known)


def _require_mapping(value: Any, where: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ManifestError(f"{where} 는 매핑이어야 합니다: {value!r}")
    return value


def _str_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ManifestError(f"{where} 는 문자열 목록이어야 합니다: {value!r}")
    return list(value)


def parse_retry(raw: Any, where: str) -> RetryPolicy:
    data = _require_mapping(raw, where)
    try:
        return RetryPolicy(
            max_attempts=int(data.get("maxAttempts", 1)),
            backoff_base_ms=int(data.get("backoffBaseMs", 1000)),
            backoff_cap_ms=int(data.get("backoffCapMs", 60_000)),
            jitter=bool(data.get("jitter", False)),
        )
    except (TypeError, ValueError) as e:
        raise ManifestError(f"{where} 가 올바르지 않습니다: {e}") from e


def parse_step(raw: Any, index: int) -> Step:
    where = f"steps[{index}]"
    data = _require_mapping(raw, where)

    step_id = data.get("id")
    kind = data.get("kind")
    if not isinstance(step_id, str) or not step_id:
        raise ManifestError(f"{where}.id 가 필요합니다.")
    if not isinstance(kind, str) or not kind:
        raise ManifestError(f"{where}.kind 가 필요합니다. (step={step_id})")

    timeout_ms = data.get("timeoutMs")
    if timeout_ms is not None:
        try:
            timeout_ms = int(timeout_ms)
        except (TypeError, ValueError) as e:
            raise ManifestError(f"{where}.timeoutMs 는 정수여야 합니다: {timeout_ms!r}") from e

    return Step(
        id=step_id,
        kind=kind,
        params=dict(_require_mapping(data.get("params"), f"{where}.params")),
        depends_on=tuple(_str_list(data.get("dependsOn"), f"{where}.dependsOn")),
        idempotency_key=str(data.get("idempotencyKey") or ""),
        timeout_ms=timeout_ms,
        retry=parse_retry(data.get("retry"), f"{where}.retry"),
        secrets=tuple(_str_list(data.get("secrets"), f"{where}.secrets")),
    )


def parse_health_signal(raw: Any) -> Optional[HealthSignal]:
    if raw is None:
        return None
    data = _require_mapping(raw, "verify")
    url = data.get("url")
    if not isinstance(url, str) or not url:
        raise ManifestError("verify.url 이 필요합니다.")
    try:
        return HealthSignal(
            url=url,
            expect=dict(_require_mapping(data.get("expect"), "verify.expect")),
            interval_seconds=int(data.get("intervalMs", 5000)) / 1000.0,
            timeout_seconds=int(data.get("timeoutMs", 300_000)) / 1000.0,
        )
    except (TypeError, ValueError) as e:
        raise ManifestError(f"verify 설정이 올바르지 않습니다: {e}") from e


def parse_manifest(document: Any) -> Manifest:
    if isinstance(document, list):
        document = {"steps": document}
    data = _require_mapping(document, "manifest")

    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list):
        raise ManifestError("steps 목록이 필요합니다.")

    context = {
        str(k): "" if v is None else str(v)
        for k, v in _require_mapping(data.get("context"), "context").items()
    }

    return Manifest(
        steps=[parse_step(raw, i) for i, raw in enumerate(raw_steps)],
        context=context,
        health_signal=parse_health_signal(data.get("verify")),
    )


def load_manifest(path: str) -> Manifest:
    """
    YAML(.yaml/.yml) 또는 JSON 매니페스트 파일을 읽는다.
    """
    if not os.path.exists(path):
        raise ManifestError(f"매니페스트 파일이 없습니다: {path}")

    with open(path, "r", encoding="utf-8") as f:
        text = f.read()

    try:
        if path.endswith(".json"):
            document = json.loads(text)
        else:
            document = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ManifestError(f"매니페스트를 해석할 수 없습니다: {path}: {e}") from e

    manifest = parse_manifest(document)
    logger.debug("매니페스트 로드: %s (steps=%d)", path, len(manifest.steps))
    return manifest
