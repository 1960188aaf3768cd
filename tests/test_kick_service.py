from __future__ import annotations

import asyncio
import io
import re
from unittest.mock import MagicMock

import requests

from conftest import FakeHandle, FakeRuntime, make_entry
from docker_runtime import DockerRuntime
from kick_service import (
    KickOutcome,
    KickService,
    build_create_options,
    extract_allowed_query_params,
    gen_new_instance_name,
)


def test_query_params_are_strictly_allowlisted():
    entry = make_entry(queryParamsToEnv=["FOO"])

    assert extract_allowed_query_params(entry, {"FOO": "bar", "BAZ": "qux"}) == ["FOO=bar"]
    assert extract_allowed_query_params(entry, {"BAZ": "qux"}) == []


def test_instance_name_uses_cleaned_name_and_unique_suffix():
    entry = make_entry(name="Nightly Report!")

    first = gen_new_instance_name(entry)
    second = gen_new_instance_name(entry)

    assert re.fullmatch(r"Nightly-Report-_[0-9a-f-]{36}", first)
    assert first != second


def test_create_options_append_query_env_and_force_name():
    entry = make_entry(createOptions={"name": "fixed", "environment": ["A=1"], "mem_limit": "128m"})

    options = build_create_options(entry, "My-Job_x", ["A=2", "B=3"])

    assert options == {"name": "My-Job_x", "environment": ["A=1", "A=2", "B=3"], "mem_limit": "128m"}
    # The configured entry is never mutated
    assert entry.create_options == {"name": "fixed", "environment": ["A=1"], "mem_limit": "128m"}
    assert build_create_options(entry, "My-Job_y", [])["environment"] == ["A=1"]


def test_create_options_without_environment():
    options = build_create_options(make_entry(), "My-Job_x", [])
    assert options == {"name": "My-Job_x"}


def test_kick_runs_and_cleans_up():
    runtime = FakeRuntime()
    entry = make_entry(auth={"username": "bot", "password": "pw"})
    service = KickService([entry], runtime)

    async def scenario():
        outcome = await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()
        return outcome

    assert asyncio.run(scenario()) is KickOutcome.ACCEPTED
    assert runtime.pulls == [("example/job:latest", entry.auth)]
    assert len(runtime.runs) == 1
    assert runtime.runs[0]["cmd"] == ["run", "--once"]
    assert runtime.handles[0].removed
    assert service.tracker.count(entry.name) == 0


def test_unknown_key_and_forbidden_never_touch_runtime():
    runtime = FakeRuntime()
    entry = make_entry(allowFrom=["10.0.0.1"])
    service = KickService([entry], runtime)

    assert asyncio.run(service.kick("nope", {}, "10.0.0.1")) is KickOutcome.UNKNOWN_KEY
    assert asyncio.run(service.kick(entry.key, {}, "10.0.0.2")) is KickOutcome.FORBIDDEN
    assert asyncio.run(service.kick(entry.key, {}, None)) is KickOutcome.FORBIDDEN
    assert runtime.pulls == []
    assert runtime.runs == []


def test_pull_failure_is_accepted_but_nothing_runs():
    runtime = FakeRuntime()
    runtime.pull_error = RuntimeError("registry unavailable")
    entry = make_entry()
    service = KickService([entry], runtime)

    assert asyncio.run(service.kick(entry.key, {}, "127.0.0.1")) is KickOutcome.ACCEPTED
    assert runtime.runs == []
    assert service.tracker.count(entry.name) == 0


def test_run_failure_releases_slot_and_removes_container():
    runtime = FakeRuntime()
    runtime.fail_after_create = True
    entry = make_entry()
    service = KickService([entry], runtime)

    async def scenario():
        await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()

    asyncio.run(scenario())

    assert service.tracker.count(entry.name) == 0
    assert runtime.handles[0].removed


def test_run_failure_before_create_releases_slot():
    runtime = FakeRuntime()
    runtime.run_error = RuntimeError("no such image")
    entry = make_entry()
    service = KickService([entry], runtime)

    async def scenario():
        await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()

    asyncio.run(scenario())

    assert service.tracker.count(entry.name) == 0
    assert runtime.handles == []


def test_remove_failure_is_swallowed():
    runtime = FakeRuntime()
    runtime.fail_remove = True
    entry = make_entry()
    service = KickService([entry], runtime)

    async def scenario():
        first = await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()
        second = await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()
        return first, second

    assert asyncio.run(scenario()) == (KickOutcome.ACCEPTED, KickOutcome.ACCEPTED)
    assert len(runtime.runs) == 2
    assert service.tracker.count(entry.name) == 0


def test_limit_reached_while_instance_runs():
    runtime = FakeRuntime(block_runs=True)
    entry = make_entry(limit=1)
    service = KickService([entry], runtime)

    async def scenario():
        first = await service.kick(entry.key, {}, "127.0.0.1")
        second = await service.kick(entry.key, {}, "127.0.0.1")
        runtime.finish_runs()
        await service.wait_idle()
        third = await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()
        return first, second, third

    outcomes = asyncio.run(scenario())

    assert outcomes == (KickOutcome.ACCEPTED, KickOutcome.LIMIT_REACHED, KickOutcome.ACCEPTED)
    assert len(runtime.pulls) == 3
    assert len(runtime.runs) == 2


def test_connection_error_during_run_still_removes_container():
    container = MagicMock()
    container.name = "My-Job_1"
    container.logs.side_effect = requests.exceptions.ConnectionError("daemon went away")
    client = MagicMock()
    client.containers.create.return_value = container
    entry = make_entry()
    service = KickService([entry], DockerRuntime(client), output=io.StringIO())

    async def scenario():
        outcome = await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()
        return outcome

    assert asyncio.run(scenario()) is KickOutcome.ACCEPTED
    container.remove.assert_called_once_with()
    assert service.tracker.count(entry.name) == 0


def test_slot_is_held_until_container_removed():
    entry = make_entry()
    runtime = FakeRuntime()
    service = KickService([entry], runtime)
    counts_during_remove = []

    class RecordingHandle(FakeHandle):
        async def remove(self):
            counts_during_remove.append(service.tracker.count(entry.name))
            await super().remove()

    async def run(image, cmd, output=None, create_options=None):
        return {"StatusCode": 0}, RecordingHandle(create_options["name"])

    runtime.run = run

    async def scenario():
        await service.kick(entry.key, {}, "127.0.0.1")
        await service.wait_idle()

    asyncio.run(scenario())

    assert counts_during_remove == [1]
    assert service.tracker.count(entry.name) == 0
