from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from textwrap import shorten
from typing import Mapping, Optional, Sequence

from .errors import PermanentStepError, TransientStepError
from .logging_utils import get_logger


logger = get_logger(__name__)


# stderr 에 이런 문구가 있으면 일시적 장애로 보고 재시도한다.
_TRANSIENT_PATTERNS = re.compile(
    r"(timed? ?out|timeout|throttl|rate ?limit|too many requests|429|503|"
    r"service unavailable|temporarily unavailable|connection (reset|refused)|"
    r"could not resolve host|tls handshake|i/o timeout|try again)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


def is_transient_output(text: str) -> bool:
    return bool(text) and bool(_TRANSIENT_PATTERNS.search(text))


def run_command(
    cmd: Sequence[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = 900.0,
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - stdout/stderr 를 캡처하고, 실패 시 일부를 에러 메시지에 포함
    - 명령 없음 -> PermanentStepError
    - timeout 초과 -> TransientStepError
    - exit != 0 -> 출력이 일시 장애처럼 보이면 Transient, 아니면 Permanent

    env 에는 시크릿이 들어갈 수 있으므로 로그에는 명령 인자만 남긴다.
    """
    logger.info("명령 실행: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            list(cmd),
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as e:
        raise PermanentStepError(
            f"필요한 명령을 찾을 수 없습니다: {cmd[0]} (설치되어 있는지 확인하세요)"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise TransientStepError(
            f"명령 실행이 {timeout}초 안에 끝나지 않았습니다: {' '.join(cmd)}"
        ) from e
    except subprocess.CalledProcessError as e:
        stdout = (e.stdout or "").strip()
        stderr = (e.stderr or "").strip()
        detail = ""
        if stderr:
            detail = "\nstderr:\n" + shorten(stderr, width=2000)
        elif stdout:
            detail = "\nstdout:\n" + shorten(stdout, width=2000)
        message = f"명령 실행 실패: {' '.join(cmd)} (exit={e.returncode}){detail}"
        if is_transient_output(stderr or stdout):
            raise TransientStepError(message) from e
        raise PermanentStepError(message) from e

    if result.stdout:
        logger.debug("명령 stdout: %s", shorten(result.stdout.strip(), width=2000))
    if result.stderr:
        logger.debug("명령 stderr: %s", shorten(result.stderr.strip(), width=2000))
    return RunResult(returncode=result.returncode, stdout=result.stdout or "", stderr=result.stderr or "")
