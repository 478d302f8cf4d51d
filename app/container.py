from typing import Dict, List, Optional

import docker

from config import log
from provisioning.errors import TransportError

# Docker client, created on first use so that importing this module does not
# require a running daemon
_docker_client = None


def get_docker_client():
    global _docker_client
    if _docker_client is None:
        try:
            _docker_client = docker.from_env()  # Default Docker context
        except docker.errors.DockerException as e:
            raise TransportError(f"Cannot connect to the Docker daemon: {e}") from e
    return _docker_client


class Container:
    def __init__(self, container_name: str, client=None):
        """ Handle on a container started outside of this tool, e.g. a peer or a fabric-tools CLI container

        :param container_name: Name of the container
        :type container_name: str
        :param client: Docker client to use. Defaults to the client of the environment
        :type client: docker.DockerClient
        """
        self.container_name = container_name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_docker_client()
        return self._client

    def _get(self):
        try:
            return self.client.containers.get(self.container_name)
        except docker.errors.NotFound as e:
            raise TransportError(f"Container {self.container_name} does not exist") from e
        except docker.errors.APIError as e:
            raise TransportError(f"Cannot inspect container {self.container_name}: {e}") from e

    def exec(self, cmd: List[str], environment: Optional[Dict[str, str]] = None):
        """ Run a command in the container.

        :returns: tuple (exit_code, stdout, stderr), the outputs as bytes
        """
        container = self._get()
        log.debug("Executing in container {}: {}".format(self.container_name, cmd))
        try:
            res = container.exec_run(cmd, environment=environment or {}, demux=True)
        except docker.errors.APIError as e:
            raise TransportError(f"Cannot run {cmd[0]} in container {self.container_name}: {e}") from e
        stdout, stderr = res.output if res.output is not None else (None, None)
        return res.exit_code, stdout, stderr

    def logs(self, since=None):
        """ Open a blocking stream over the container's log lines.
        The returned stream must be closed with close(). """
        container = self._get()
        try:
            return container.logs(stream=True, follow=True, since=since)
        except docker.errors.APIError as e:
            raise TransportError(f"Cannot read the logs of container {self.container_name}: {e}") from e
