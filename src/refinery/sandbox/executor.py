"""Sandbox executor for generated transformation code.

Each run starts a fresh ``runner.py`` child in a private temporary directory,
either as a local ``python -I`` process or inside a locked-down container
(see ``refinery.sandbox.container``). The child applies resource limits to
itself, installs an audit hook, restricts builtins and imports, calls the
code's ``transform(data)`` function and reports back on stdout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from refinery.sandbox.runner import RESULT_MARKER

logger = logging.getLogger(__name__)

RUNNER_PATH = Path(__file__).with_name("runner.py")
MAX_ERROR_CHARS = 2000


@dataclass
class SandboxResult:
    """Outcome of one sandboxed run. Failures are data, never exceptions."""

    success: bool
    output: dict[str, Any] | None = None
    rows: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    execution_time_ms: int = 0
    logs: str = ""

    @classmethod
    def failure(cls, error: str, execution_time_ms: int = 0, logs: str = "") -> SandboxResult:
        return cls(
            success=False,
            error=error[:MAX_ERROR_CHARS],
            execution_time_ms=execution_time_ms,
            logs=logs,
        )

    def to_dict(self, include_rows: bool = False) -> dict[str, Any]:
        data = {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "execution_time_ms": self.execution_time_ms,
            "logs": self.logs,
        }
        if include_rows:
            data["rows"] = self.rows
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxResult:
        return cls(
            success=bool(data.get("success")),
            output=data.get("output"),
            rows=data.get("rows") or [],
            error=data.get("error"),
            execution_time_ms=int(data.get("execution_time_ms") or 0),
            logs=data.get("logs") or "",
        )


def _scrubbed_env(workdir: str) -> dict[str, str]:
    return {
        "PATH": os.defpath,
        "HOME": workdir,
        "TMPDIR": workdir,
        "LANG": "C.UTF-8",
        "LC_ALL": "C.UTF-8",
    }


def _parse_report(stdout: bytes) -> dict[str, Any] | None:
    for line in reversed(stdout.decode("utf-8", errors="replace").splitlines()):
        if line.startswith(RESULT_MARKER):
            return json.loads(line[len(RESULT_MARKER) :])
    return None


class SandboxExecutor:
    """Runs generated code against rows in an isolated child process.

    This backend starts the runner as a local ``python -I`` process. The
    runner's audit hook and resource limits keep the code away from files,
    sockets and child processes; ``DockerSandboxExecutor`` adds a container
    boundary on top.
    """

    backend = "subprocess"

    def __init__(
        self,
        timeout_seconds: float = 60,
        memory_limit_mb: int = 512,
        python_executable: str | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.memory_limit_mb = memory_limit_mb
        self.python_executable = python_executable or sys.executable

    async def execute(
        self,
        code: str,
        rows: list[dict[str, Any]],
        timeout_seconds: float | None = None,
        memory_limit_mb: int | None = None,
    ) -> SandboxResult:
        """Run ``code`` against ``rows``.

        Never raises: crashes, timeouts, limit violations and launcher
        errors all come back as ``success=False`` with ``error`` set.
        """
        timeout = timeout_seconds or self.timeout_seconds
        limits = {
            "memory_limit_mb": memory_limit_mb or self.memory_limit_mb,
            "cpu_seconds": int(timeout) + 1,
        }
        started = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        try:
            payload = json.dumps(
                {"code": code, "rows": rows, "limits": limits}, default=str
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            return SandboxResult.failure(f"Could not serialize input rows: {e}")

        try:
            with tempfile.TemporaryDirectory(prefix="refinery_sandbox_") as workdir:
                returncode, stdout, stderr = await self._launch(
                    payload, workdir, timeout, limits
                )
        except TimeoutError:
            logger.warning(f"Sandbox run timed out after {timeout} seconds")
            return SandboxResult.failure(
                f"Execution timed out after {timeout} seconds", elapsed_ms()
            )
        except Exception as e:
            logger.warning(f"Sandbox launch failed ({self.backend}): {e}")
            return SandboxResult.failure(f"Sandbox launch failed: {e}", elapsed_ms())

        try:
            report = _parse_report(stdout)
        except ValueError as e:
            return SandboxResult.failure(
                f"Sandbox produced unreadable output: {e}", elapsed_ms()
            )

        if report is None:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            if returncode is not None and returncode < 0:
                error = f"Sandbox process terminated by signal {-returncode}"
            else:
                error = f"Sandbox process exited with code {returncode}"
            if stderr_text:
                error = f"{error}: {stderr_text[-MAX_ERROR_CHARS:]}"
            logger.warning(error)
            return SandboxResult.failure(error, elapsed_ms())

        if not report.get("success"):
            logger.warning(f"Generated code failed in sandbox: {report.get('error')}")
            return SandboxResult.failure(
                report.get("error") or "Execution failed",
                elapsed_ms(),
                logs=report.get("logs") or "",
            )

        return SandboxResult(
            success=True,
            output=report.get("output"),
            rows=report.get("rows") or [],
            execution_time_ms=elapsed_ms(),
            logs=report.get("logs") or "",
        )

    async def _launch(
        self, payload: bytes, workdir: str, timeout: float, limits: dict[str, int]
    ) -> tuple[int | None, bytes, bytes]:
        """Run the runner on ``payload`` and return (exit code, stdout, stderr).

        Raises:
            TimeoutError: If the run outlived ``timeout``; the child is killed
        """
        process = await asyncio.create_subprocess_exec(
            self.python_executable,
            "-I",
            str(RUNNER_PATH),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            env=_scrubbed_env(workdir),
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(payload), timeout=timeout
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            raise

        return process.returncode, stdout, stderr
