"""
Container runtime client used by the kicker.

Wraps the blocking Docker SDK and exposes awaitable pull/run/remove calls by
pushing each SDK call onto a worker thread, so the event loop keeps serving
requests while images download and containers run.
"""

import asyncio
import codecs
import sys
from typing import Any, Dict, List, Optional, TextIO, Tuple

import docker
import structlog
from docker.errors import DockerException

from models import DockerConnectOptions, RegistryAuth

logger = structlog.get_logger()


class ContainerRunError(Exception):
    """A run failed after its container was created; ``handle`` allows cleanup"""

    def __init__(self, message: str, handle: Optional["DockerContainerHandle"] = None):
        super().__init__(message)
        self.handle = handle


class DockerContainerHandle:
    """A created container that can be removed once its run is over"""

    def __init__(self, container):
        self._container = container

    @property
    def name(self) -> str:
        return self._container.name

    @property
    def id(self) -> str:
        return self._container.id

    async def remove(self) -> None:
        await asyncio.to_thread(self._container.remove)


def _write_output(output: TextIO, chunk: Any, decoder) -> None:
    # Multi-byte characters may be split across chunks
    if isinstance(chunk, bytes):
        chunk = decoder.decode(chunk)
    if chunk:
        output.write(chunk)
        output.flush()


class DockerRuntime:
    """Pull images and run containers through a Docker daemon"""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_connect_options(cls, options: Optional[DockerConnectOptions] = None):
        options = options or DockerConnectOptions()
        base_url = options.base_url()
        if base_url is None:
            logger.info("Connecting to Docker from environment")
            return cls(docker.from_env())

        kwargs: Dict[str, Any] = {"base_url": base_url}
        if options.version:
            kwargs["version"] = options.version
        if options.timeout:
            kwargs["timeout"] = options.timeout
        logger.info("Connecting to Docker", base_url=base_url)
        return cls(docker.DockerClient(**kwargs))

    async def pull_image(self, image: str, auth: Optional[RegistryAuth] = None) -> None:
        auth_config = auth.as_auth_config() if auth else None
        logger.info("Pulling image", image=image)
        await asyncio.to_thread(self.client.images.pull, image, auth_config=auth_config)
        logger.info("Image pulled", image=image)

    def _run_blocking(
        self,
        image: str,
        cmd: List[str],
        output: TextIO,
        create_options: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], DockerContainerHandle]:
        container = self.client.containers.create(image, command=cmd or None, **create_options)
        handle = DockerContainerHandle(container)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            container.start()
            for chunk in container.logs(stream=True, follow=True):
                _write_output(output, chunk, decoder)
            _write_output(output, decoder.decode(b"", final=True), decoder)
            result = container.wait()
        except Exception as e:
            raise ContainerRunError(f"Container {handle.name} failed: {e}", handle=handle) from e
        return result, handle

    async def run(
        self,
        image: str,
        cmd: List[str],
        output: Optional[TextIO] = None,
        create_options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], DockerContainerHandle]:
        """Create, start and wait for a container, streaming its output"""
        return await asyncio.to_thread(
            self._run_blocking,
            image,
            cmd,
            output or sys.stdout,
            dict(create_options or {}),
        )

    def close(self) -> None:
        try:
            self.client.close()
        except DockerException as e:
            logger.warning("Failed to close Docker client", error=str(e))

