"""
verifier
--------

모든 스텝이 성공한 뒤, 외부 헬스 신호가 '준비' 형태가 될 때까지 폴링한다.
예산 안에 준비되지 않으면 VerificationTimeout (스텝 실패와는 별개의 종료 상태).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

import requests

from .errors import VerificationTimeout
from .logging_utils import get_logger
from .models import HealthSignal


logger = get_logger(__name__)


class HealthProbe(Protocol):
    def fetch(self, signal: HealthSignal) -> Any:
        """헬스 신호의 현재 payload 를 리턴한다. 조회 실패 시 예외."""
        ...


class HttpHealthProbe:
    def __init__(self, session: Optional[requests.Session] = None, request_timeout: float = 10.0) -> None:
        self._session = session or requests.Session()
        self._request_timeout = request_timeout

    def fetch(self, signal: HealthSignal) -> Any:
        resp = self._session.get(signal.url, timeout=self._request_timeout)
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError:
            return resp.text.strip()


def matches_shape(payload: Any, expect: Any) -> bool:
    """
    payload 가 expect 의 형태를 만족하는지 (재귀적 부분 일치).

    - dict: expect 의 모든 키가 payload 에 있고 값도 일치
    - list: expect 의 각 원소가 payload 의 어떤 원소와 일치
    - 그 외: 값 동등 비교. expect 가 "*" 이면 아무 값이나 허용
    """
    if expect == "*":
        return True
    if isinstance(expect, Mapping):
        if not isinstance(payload, Mapping):
            return False
        return all(k in payload and matches_shape(payload[k], v) for k, v in expect.items())
    if isinstance(expect, list):
        if not isinstance(payload, list):
            return False
        return all(any(matches_shape(p, e) for p in payload) for e in expect)
    return payload == expect


@dataclass
class VerificationResult:
    ready: bool
    polls: int
    elapsed: float
    last_observation: Optional[str] = None


class Verifier:
    def __init__(
        self,
        probe: Optional[HealthProbe] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe or HttpHealthProbe()
        self._sleep = sleep
        self._clock = clock

    def wait_until_ready(self, signal: HealthSignal) -> VerificationResult:
        """
        interval 마다 신호를 조회하고, 준비되면 결과를 리턴한다.

        Raises:
            VerificationTimeout: timeout 안에 준비 형태가 관측되지 않은 경우
        """
        started = self._clock()
        deadline = started + signal.timeout_seconds
        polls = 0
        last: Optional[str] = None

        logger.info("헬스체크 시작: %s (timeout=%gs)", signal.url, signal.timeout_seconds)
        while True:
            polls += 1
            try:
                payload = self._probe.fetch(signal)
            except Exception as e:  # noqa: BLE001
                # 조회 실패는 '아직 준비되지 않음'으로 취급한다.
                last = f"{type(e).__name__}: {e}"
                logger.debug("헬스체크 조회 실패 (%d): %s", polls, last)
            else:
                if matches_shape(payload, signal.expect):
                    elapsed = self._clock() - started
                    logger.info("헬스체크 통과: %s (%d회, %0.1fs)", signal.url, polls, elapsed)
                    return VerificationResult(True, polls, elapsed, str(payload)[:200])
                last = str(payload)[:200]
                logger.debug("헬스체크 미준비 (%d): %s", polls, last)

            now = self._clock()
            if now >= deadline:
                raise VerificationTimeout(signal.url, now - started, last)
            self._sleep(min(signal.interval_seconds, max(deadline - now, 0.0)))
