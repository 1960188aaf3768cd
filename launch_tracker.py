from typing import Dict, List

import structlog

from metrics import RUNNING_INSTANCES

logger = structlog.get_logger()


class LaunchTracker:
    """
    In-memory admission control for launched containers.

    Maps a configuration name to the identifiers of its currently running
    instances. Neither method awaits, so on a single event loop each call is
    one atomic admission decision; callers running on several threads must
    wrap both methods in a lock.
    """

    def __init__(self):
        self._running: Dict[str, List[str]] = {}

    def try_admit(self, config_name: str, instance_id: str, limit: int) -> bool:
        """Track a new instance; False when the configured limit is already reached"""
        bucket = self._running.get(config_name)
        if bucket is None:
            self._running[config_name] = [instance_id]
        elif len(bucket) >= limit:
            return False
        else:
            bucket.append(instance_id)

        RUNNING_INSTANCES.labels(config=config_name).set(len(self._running[config_name]))
        return True

    def release(self, config_name: str, instance_id: str) -> None:
        """Stop tracking an instance; unknown identifiers are ignored"""
        bucket = self._running.get(config_name)
        if not bucket or instance_id not in bucket:
            logger.debug(
                "Release of untracked instance ignored",
                config=config_name,
                instance=instance_id,
            )
            return

        bucket.remove(instance_id)
        RUNNING_INSTANCES.labels(config=config_name).set(len(bucket))

    def running(self, config_name: str) -> List[str]:
        return list(self._running.get(config_name, []))

    def count(self, config_name: str) -> int:
        return len(self._running.get(config_name, []))
