"""
Kick handling for Docker Kicker.

Resolves a request key to a configuration entry, enforces the entry's address
allowlist, turns allowlisted query parameters into environment variables,
pulls the image, asks the launch tracker for a slot and runs the container in
the background. The slot is released when the run ends, however it ends.
"""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

import structlog
from docker.errors import NotFound

from docker_runtime import ContainerRunError
from launch_tracker import LaunchTracker
from metrics import KICKS
from models import ConfigEntry

logger = structlog.get_logger()


class KickOutcome(Enum):
    ACCEPTED = 200
    UNKNOWN_KEY = 400
    FORBIDDEN = 403
    LIMIT_REACHED = 429

    @property
    def status_code(self) -> int:
        return self.value


@dataclass
class LaunchPlan:
    entry: ConfigEntry
    instance_name: str
    create_options: Dict[str, Any]


def gen_new_instance_name(entry: ConfigEntry) -> str:
    """Unique instance name for one container run"""
    return f"{entry.name}_{uuid.uuid4()}"


def extract_allowed_query_params(entry: ConfigEntry, query: Mapping[str, str]) -> List[str]:
    """Allowlisted query parameters in NAME=value form; values are already URL-decoded"""
    return [f"{name}={query[name]}" for name in entry.query_params_to_env if name in query]


def build_create_options(entry: ConfigEntry, instance_name: str, extra_env: Sequence[str]) -> Dict[str, Any]:
    options = dict(entry.create_options)
    env = entry.environment + list(extra_env)
    if env:
        options["environment"] = env
    options["name"] = instance_name
    return options


class KickService:
    """Owns the configuration table, the launch tracker and the background runs"""

    def __init__(
        self,
        entries: Sequence[ConfigEntry],
        runtime,
        tracker: Optional[LaunchTracker] = None,
        output=None,
    ):
        self.entries = list(entries)
        self.runtime = runtime
        self.tracker = tracker or LaunchTracker()
        self.output = output
        self._tasks: Set[asyncio.Task] = set()

    def find_entry(self, key: str) -> Optional[ConfigEntry]:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None

    def prepare(self, entry: ConfigEntry, query: Mapping[str, str]) -> LaunchPlan:
        query_env = extract_allowed_query_params(entry, query)
        logger.debug(
            "Query parameters to environment",
            config=entry.name,
            allowed=entry.query_params_to_env,
            extracted=query_env,
        )
        instance_name = gen_new_instance_name(entry)
        create_options = build_create_options(entry, instance_name, query_env)
        logger.debug("Create options", config=entry.name, create_options=create_options)
        return LaunchPlan(entry=entry, instance_name=instance_name, create_options=create_options)

    async def kick(self, key: str, query: Mapping[str, str], client_ip: Optional[str]) -> KickOutcome:
        """Validate a kick and start its launch; returns once admission is decided"""
        entry = self.find_entry(key)
        if entry is None:
            logger.info("Kick with unknown key", client_ip=client_ip)
            KICKS.labels(config="", outcome=KickOutcome.UNKNOWN_KEY.name).inc()
            return KickOutcome.UNKNOWN_KEY

        if not entry.allow_from.allows(client_ip):
            logger.warning("Rejecting kick request", config=entry.name, client_ip=client_ip)
            KICKS.labels(config=entry.name, outcome=KickOutcome.FORBIDDEN.name).inc()
            return KickOutcome.FORBIDDEN

        logger.info("Kicking via web request", config=entry.name, cmd=entry.cmd, client_ip=client_ip)
        plan = self.prepare(entry, query)

        try:
            await self.runtime.pull_image(entry.image, entry.auth)
        except Exception as e:
            # The kick was accepted; its failure is only visible in the logs
            logger.error(
                "Image pull failed",
                config=entry.name,
                image=entry.image,
                error=str(e),
                exc_info=True,
            )
            KICKS.labels(config=entry.name, outcome=KickOutcome.ACCEPTED.name).inc()
            return KickOutcome.ACCEPTED

        if not self.tracker.try_admit(entry.name, plan.instance_name, entry.limit):
            logger.warning("Limit for configuration reached; will not kick", config=entry.name, limit=entry.limit)
            KICKS.labels(config=entry.name, outcome=KickOutcome.LIMIT_REACHED.name).inc()
            return KickOutcome.LIMIT_REACHED

        task = asyncio.create_task(self._run_instance(plan))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        KICKS.labels(config=entry.name, outcome=KickOutcome.ACCEPTED.name).inc()
        return KickOutcome.ACCEPTED

    async def _run_instance(self, plan: LaunchPlan) -> None:
        entry = plan.entry
        handle = None
        logger.info("Running instance", config=entry.name, instance=plan.instance_name)
        try:
            result, handle = await self.runtime.run(entry.image, entry.cmd, self.output, plan.create_options)
            logger.debug("Container finished", instance=plan.instance_name, result=result)
        except ContainerRunError as e:
            handle = e.handle
            logger.error("Container run failed", instance=plan.instance_name, error=str(e), exc_info=True)
        except Exception as e:
            logger.error("Container run failed", instance=plan.instance_name, error=str(e), exc_info=True)
        finally:
            # The slot is held until the container itself is gone
            try:
                if handle is not None:
                    await self._remove(handle, plan.instance_name)
            finally:
                self.tracker.release(entry.name, plan.instance_name)

    async def _remove(self, handle, instance_name: str) -> None:
        try:
            await handle.remove()
            logger.info("Container removed", instance=instance_name)
        except NotFound:
            logger.info("Container already gone", instance=instance_name)
        except Exception as e:
            logger.error("Container removal failed", instance=instance_name, error=str(e), exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every background run started so far"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
