"""Tests for the Docker sandbox backend with a mocked Docker client."""

import json
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from docker.errors import DockerException, ImageNotFound

from refinery.sandbox import container as container_module
from refinery.sandbox.container import DockerSandboxExecutor
from refinery.sandbox.runner import RESULT_MARKER

ROWS = [{"id": 1, "name": "alice"}]


def _report(**fields):
    return (RESULT_MARKER + json.dumps(fields) + "\n").encode("utf-8")


@pytest.fixture
def docker_client():
    client = MagicMock()
    container = MagicMock(short_id="abc123")
    container.wait.return_value = {"StatusCode": 0}
    client.containers.create.return_value = container
    return client


def _set_logs(container, stdout=b"", stderr=b""):
    container.logs.side_effect = lambda **kwargs: stdout if kwargs["stdout"] else stderr


@pytest.mark.asyncio
async def test_container_is_locked_down(docker_client):
    staged = {}

    def create(**config):
        mount = next(iter(config["volumes"]))
        staged["payload"] = json.loads(Path(mount, "payload.json").read_text())
        staged["runner"] = Path(mount, "runner.py").exists()
        return docker_client.containers.create.return_value

    docker_client.containers.create.side_effect = create
    container = docker_client.containers.create.return_value
    report = _report(
        success=True, output={"stats": {"total": 1}}, rows=[{"id": 1, "name": "ALICE"}]
    )
    _set_logs(container, stdout=report)
    executor = DockerSandboxExecutor(memory_limit_mb=256, client=docker_client)

    result = await executor.execute("def transform(data):\n    return data\n", ROWS)

    assert result.success, result.error
    assert result.rows == [{"id": 1, "name": "ALICE"}]

    config = docker_client.containers.create.call_args.kwargs
    assert config["network_disabled"] is True
    assert config["read_only"] is True
    assert config["cap_drop"] == ["ALL"]
    assert config["security_opt"] == ["no-new-privileges"]
    assert config["user"] == "65534:65534"
    assert config["mem_limit"] == config["memswap_limit"] == "256m"
    assert config["pids_limit"] == 64
    (volume,) = config["volumes"].values()
    assert volume == {"bind": "/sandbox", "mode": "ro"}
    assert config["command"][:2] == ["python", "-I"]

    assert staged["runner"]
    assert staged["payload"]["rows"] == ROWS
    assert staged["payload"]["limits"]["memory_limit_mb"] == 256
    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_failed_run_inside_container(docker_client):
    container = docker_client.containers.create.return_value
    container.wait.return_value = {"StatusCode": 1}
    _set_logs(container, stdout=_report(success=False, error="KeyError: 'name'", logs=""))

    result = await DockerSandboxExecutor(client=docker_client).execute("x", ROWS)

    assert not result.success
    assert result.error == "KeyError: 'name'"


@pytest.mark.asyncio
async def test_killed_container_without_report(docker_client):
    container = docker_client.containers.create.return_value
    container.wait.return_value = {"StatusCode": 137}
    _set_logs(container, stderr=b"Killed")

    result = await DockerSandboxExecutor(client=docker_client).execute("x", ROWS)

    assert not result.success
    assert result.error == "Sandbox process exited with code 137: Killed"
    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_timeout_kills_and_removes_container(docker_client):
    container = docker_client.containers.create.return_value
    released = threading.Event()

    def wait():
        released.wait(5)
        return {"StatusCode": 137}

    container.wait.side_effect = wait
    container.kill.side_effect = released.set
    executor = DockerSandboxExecutor(timeout_seconds=0.2, client=docker_client)

    result = await executor.execute("x", ROWS)

    assert not result.success
    assert "timed out" in result.error
    container.kill.assert_called_once()
    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_missing_image_is_reported(docker_client):
    docker_client.containers.create.side_effect = ImageNotFound("No such image")

    executor = DockerSandboxExecutor(image="refinery-sandbox", client=docker_client)

    result = await executor.execute("x", ROWS)

    assert not result.success
    assert "docker pull refinery-sandbox" in result.error


@pytest.mark.asyncio
async def test_unreachable_daemon_is_reported(monkeypatch):
    from_env = MagicMock(side_effect=DockerException("Error while fetching server API version"))
    monkeypatch.setattr(container_module.docker, "from_env", from_env)

    result = await DockerSandboxExecutor().execute("x", ROWS)

    assert not result.success
    assert result.error.startswith("Sandbox launch failed")
