"""Container sandbox backend built on the Docker SDK."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Any

import docker
from docker.errors import DockerException, ImageNotFound

from refinery.sandbox.executor import RUNNER_PATH, SandboxExecutor

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "python:3.12-slim"
DEFAULT_CPU_QUOTA = 50000
DEFAULT_PIDS_LIMIT = 64
CONTAINER_MOUNT = "/sandbox"
PAYLOAD_NAME = "payload.json"
NOBODY = "65534:65534"


class DockerSandboxExecutor(SandboxExecutor):
    """Runs the sandbox runner inside a throwaway Docker container.

    Security constraints:
    - Network disabled
    - Read-only root filesystem; ``/tmp`` is a small tmpfs
    - Unprivileged user, all capabilities dropped, no new privileges
    - Memory (no swap), CPU quota and process count limits

    The runner and its payload are bind-mounted read-only, so the Docker
    daemon has to see the same filesystem as this process.
    """

    backend = "docker"

    def __init__(
        self,
        timeout_seconds: float = 60,
        memory_limit_mb: int = 512,
        image: str = DEFAULT_IMAGE,
        cpu_quota: int = DEFAULT_CPU_QUOTA,
        pids_limit: int = DEFAULT_PIDS_LIMIT,
        client: docker.DockerClient | None = None,
    ):
        super().__init__(timeout_seconds=timeout_seconds, memory_limit_mb=memory_limit_mb)
        self.image = image
        self.cpu_quota = cpu_quota
        self.pids_limit = pids_limit
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def container_config(self, workdir: str, limits: dict[str, int]) -> dict[str, Any]:
        memory = f"{limits['memory_limit_mb']}m"
        return {
            "image": self.image,
            "command": [
                "python",
                "-I",
                f"{CONTAINER_MOUNT}/runner.py",
                f"{CONTAINER_MOUNT}/{PAYLOAD_NAME}",
            ],
            "user": NOBODY,
            "working_dir": "/tmp",
            "environment": {"HOME": "/tmp", "LANG": "C.UTF-8", "LC_ALL": "C.UTF-8"},
            "network_disabled": True,
            "read_only": True,
            "mem_limit": memory,
            "memswap_limit": memory,
            "cpu_quota": self.cpu_quota,
            "pids_limit": self.pids_limit,
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges"],
            "tmpfs": {"/tmp": "size=16m,mode=1777"},
            "volumes": {workdir: {"bind": CONTAINER_MOUNT, "mode": "ro"}},
        }

    def _stage(self, payload: bytes, workdir: str) -> None:
        directory = Path(workdir)
        shutil.copyfile(RUNNER_PATH, directory / "runner.py")
        (directory / PAYLOAD_NAME).write_bytes(payload)

        # The container user is not the owner of these files
        os.chmod(directory, 0o755)
        for name in ("runner.py", PAYLOAD_NAME):
            os.chmod(directory / name, 0o644)

    def _create(self, workdir: str, limits: dict[str, int]):
        try:
            return self.client.containers.create(**self.container_config(workdir, limits))
        except ImageNotFound as e:
            raise DockerException(
                f"Sandbox image '{self.image}' not found. "
                f"Pull it first with: docker pull {self.image}"
            ) from e

    def _kill(self, container) -> None:
        try:
            container.kill()
        except DockerException as e:
            logger.warning(f"Could not kill sandbox container {container.short_id}: {e}")

    def _remove(self, container) -> None:
        try:
            container.remove(force=True)
        except DockerException as e:
            logger.warning(f"Could not remove sandbox container {container.short_id}: {e}")

    async def _launch(
        self, payload: bytes, workdir: str, timeout: float, limits: dict[str, int]
    ) -> tuple[int | None, bytes, bytes]:
        self._stage(payload, workdir)
        container = await asyncio.to_thread(self._create, workdir, limits)
        logger.debug(f"Created sandbox container {container.short_id} from {self.image}")

        try:
            await asyncio.to_thread(container.start)
            try:
                status = await asyncio.wait_for(
                    asyncio.to_thread(container.wait), timeout=timeout
                )
            except TimeoutError:
                await asyncio.to_thread(self._kill, container)
                raise

            stdout = await asyncio.to_thread(container.logs, stdout=True, stderr=False)
            stderr = await asyncio.to_thread(container.logs, stdout=False, stderr=True)
        finally:
            await asyncio.to_thread(self._remove, container)

        return status.get("StatusCode"), stdout, stderr
