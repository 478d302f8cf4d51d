import asyncio
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from config import DEFAULT_COMMAND_TIMEOUT, log
from provisioning.errors import TransportError

# Output fragments of the Fabric CLIs that point at the network or TLS rather than the request
_UNREACHABLE_MARKERS = (
    "connection refused",
    "no such host",
    "i/o timeout",
    "connection reset",
    "network is unreachable",
    "context deadline exceeded",
    "x509:",
    "tls:",
)


def looks_unreachable(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in _UNREACHABLE_MARKERS)


@dataclass(frozen=True)
class CommandResult:
    args: Sequence[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self):
        return self.returncode == 0

    @property
    def output(self):
        """stdout and stderr joined, the Fabric CLIs log most things to stderr"""
        return "\n".join(s for s in (self.stdout, self.stderr) if s)


class CommandRunner:
    """Runs a Fabric binary and collects its output"""

    def __init__(self, timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout

    async def run(self, args: Sequence[str], env: Optional[Dict[str, str]] = None,
                  sensitive: bool = False) -> CommandResult:
        """Run a command. The output of sensitive commands is never logged."""
        raise NotImplementedError


class LocalRunner(CommandRunner):
    """Runs the binaries installed on the host machine"""

    async def run(self, args, env=None, sensitive=False):
        log.info(f"Running command: {' '.join(args)}")
        proc_env = dict(os.environ)
        if env:
            proc_env.update(env)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
            )
        except OSError as e:
            raise TransportError(f"Cannot run {args[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TransportError(f"Command {args[0]} timed out after {self.timeout}s")

        result = CommandResult(
            args=tuple(args),
            returncode=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )
        if not sensitive:
            log.debug(f"Command {args[0]} exited with {result.returncode}:\n{result.output}")
        return result


class ContainerRunner(CommandRunner):
    """Runs the binaries inside a running tools container (e.g. hyperledger/fabric-tools).

    The scratch and wallet directories must be mounted at the same path inside
    the container, since file arguments are passed through unchanged.
    """

    def __init__(self, container, timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT):
        super().__init__(timeout=timeout)
        self.container = container

    async def run(self, args, env=None, sensitive=False):
        log.info(f"Running command in container {self.container.container_name}: {' '.join(args)}")
        try:
            exit_code, stdout, stderr = await asyncio.wait_for(
                asyncio.to_thread(self.container.exec, list(args), env),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise TransportError(
                f"Command {args[0]} timed out after {self.timeout}s in container {self.container.container_name}")

        result = CommandResult(
            args=tuple(args),
            returncode=exit_code,
            stdout=(stdout or b"").decode("utf-8", errors="replace").strip(),
            stderr=(stderr or b"").decode("utf-8", errors="replace").strip(),
        )
        if not sensitive:
            log.debug(f"Command {args[0]} exited with {result.returncode}:\n{result.output}")
        return result
