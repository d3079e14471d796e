from __future__ import annotations

import sys

import pytest

from deploy_flow.errors import PermanentStepError, TransientStepError
from deploy_flow.subprocess_utils import is_transient_output, run_command


def test_success_captures_output() -> None:
    result = run_command([sys.executable, "-c", "print('done')"], timeout=10)

    assert result.returncode == 0
    assert result.stdout.strip() == "done"


def test_env_is_passed_to_child() -> None:
    result = run_command(
        [sys.executable, "-c", "import os; print(os.environ['DEPLOY_STEP_ID'])"],
        env={"DEPLOY_STEP_ID": "migrate", "PATH": ""},
        timeout=10,
    )

    assert result.stdout.strip() == "migrate"


def test_transient_failure_output_is_classified_retryable() -> None:
    cmd = [sys.executable, "-c", "import sys; sys.stderr.write('ERROR: 503 Service Unavailable'); sys.exit(1)"]

    with pytest.raises(TransientStepError) as excinfo:
        run_command(cmd, timeout=10)

    assert excinfo.value.retryable is True
    assert "exit=1" in str(excinfo.value)


def test_other_failure_is_permanent() -> None:
    cmd = [sys.executable, "-c", "import sys; sys.stderr.write('AuthorizationFailed'); sys.exit(2)"]

    with pytest.raises(PermanentStepError) as excinfo:
        run_command(cmd, timeout=10)

    assert excinfo.value.retryable is False
    assert "AuthorizationFailed" in str(excinfo.value)


def test_missing_binary_is_permanent() -> None:
    with pytest.raises(PermanentStepError):
        run_command(["definitely-not-a-real-binary-xyz"], timeout=5)


def test_timeout_is_transient() -> None:
    with pytest.raises(TransientStepError):
        run_command([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Operation timed out", True),
        ("TooManyRequests: rate limit exceeded", True),
        ("connection reset by peer", True),
        ("ResourceNotFound", False),
        ("", False),
    ],
)
def test_is_transient_output(text: str, expected: bool) -> None:
    assert is_transient_output(text) is expected
