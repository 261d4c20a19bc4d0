from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time

from storyloop.collaborators.base import QualityGateRunner
from storyloop.models import QualityCheckConfig, QualityCheckResult

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 5000
MAX_ERROR_CHARS = 2000


class SubprocessQualityGateRunner(QualityGateRunner):
    """Runs each enabled check as a subprocess in the workspace, sequentially."""

    def __init__(self, extra_env: dict[str, str] | None = None) -> None:
        self._extra_env = dict(extra_env or {})

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update({"FORCE_COLOR": "0", "CI": "1"})
        env.update(self._extra_env)
        return env

    async def run_check(self, check: QualityCheckConfig, workspace_path: str) -> QualityCheckResult:
        started = time.monotonic()

        def _result(passed: bool, output: str, exit_code: int | None) -> QualityCheckResult:
            return QualityCheckResult(
                check_id=check.id,
                check_name=check.name,
                check_type=check.type,
                passed=passed,
                required=check.required,
                output=output,
                duration_ms=int((time.monotonic() - started) * 1000),
                exit_code=exit_code,
            )

        try:
            argv = shlex.split(check.command)
            if not argv:
                return _result(False, "Empty quality check command", -1)
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workspace_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except (OSError, ValueError) as exc:
            logger.warning("Quality check %s could not start: %s", check.id, exc)
            return _result(False, str(exc)[:MAX_ERROR_CHARS], -1)

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=check.timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            stdout, stderr = await proc.communicate()
            output = _combine(stdout, stderr)
            message = f"Timed out after {check.timeout_seconds:g}s"
            output = f"{output}\n{message}".strip() if output else message
            logger.warning("Quality check %s timed out in %s", check.id, workspace_path)
            return _result(False, output[:MAX_OUTPUT_CHARS], proc.returncode)

        exit_code = proc.returncode
        return _result(exit_code == 0, _combine(stdout, stderr)[:MAX_OUTPUT_CHARS], exit_code)

    async def run(
        self, checks: list[QualityCheckConfig], workspace_path: str
    ) -> list[QualityCheckResult]:
        results: list[QualityCheckResult] = []
        for check in checks:
            if not check.enabled:
                continue
            results.append(await self.run_check(check, workspace_path))
        return results


def _combine(stdout: bytes | None, stderr: bytes | None) -> str:
    out = (stdout or b"").decode("utf-8", errors="replace")
    err = (stderr or b"").decode("utf-8", errors="replace")
    return f"{out}\n{err}".strip()
