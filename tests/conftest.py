from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docker_runtime import ContainerRunError
from kicker import create_app
from models import ConfigEntry

LONG_KEY = "k" * 64


class FakeHandle:
    def __init__(self, name: str, fail_remove: bool = False):
        self.name = name
        self.fail_remove = fail_remove
        self.removed = False

    async def remove(self) -> None:
        if self.fail_remove:
            raise RuntimeError("remove failed")
        self.removed = True


class FakeRuntime:
    """Records runtime calls; runs block until ``finish_runs`` when ``block_runs`` is set"""

    def __init__(self, block_runs: bool = False):
        self.pulls: list[tuple[str, object]] = []
        self.runs: list[dict] = []
        self.handles: list[FakeHandle] = []
        self.pull_error: Exception | None = None
        self.run_error: Exception | None = None
        self.fail_after_create = False
        self.fail_remove = False
        self.block_runs = block_runs
        self._gate = asyncio.Event()

    def finish_runs(self) -> None:
        self._gate.set()

    async def pull_image(self, image, auth=None):
        self.pulls.append((image, auth))
        await asyncio.sleep(0)
        if self.pull_error is not None:
            raise self.pull_error

    async def run(self, image, cmd, output=None, create_options=None):
        self.runs.append({"image": image, "cmd": cmd, "create_options": dict(create_options or {})})
        if self.run_error is not None:
            raise self.run_error
        handle = FakeHandle(create_options["name"], fail_remove=self.fail_remove)
        self.handles.append(handle)
        if self.block_runs:
            await self._gate.wait()
        if self.fail_after_create:
            raise ContainerRunError("exit during start", handle=handle)
        return {"StatusCode": 0}, handle


def make_entry(**overrides) -> ConfigEntry:
    data = {
        "name": "My Job",
        "key": LONG_KEY,
        "image": "example/job:latest",
        "cmd": ["run", "--once"],
    }
    data.update(overrides)
    return ConfigEntry.model_validate(data)


def request_from(app, address: str = "127.0.0.1") -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, client=(address, 40000))
    return httpx.AsyncClient(transport=transport, base_url="http://kicker")


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def entry():
    return make_entry()


@pytest.fixture
def app(entry, runtime):
    return create_app([entry], runtime)
