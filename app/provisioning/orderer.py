import contextlib
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Sequence, Tuple

from config import BASE_DIR, FABRIC_CFG_PATH, FABRIC_TOOLS_PEER, log
from provisioning.configtx import (ChannelConfigUpdate, ConfigSignature,
                                   build_config_update_envelope)
from provisioning.errors import (ChannelNotFound, RejectedCredential,
                                 TransportError)
from provisioning.network import NetworkConfig, OrdererNode
from provisioning.runner import CommandRunner, LocalRunner, looks_unreachable
from provisioning.wallet import Identity, write_msp_dir

SUCCESS = "SUCCESS"

_STATUS_RE = re.compile(r"status: (\w+)")
_NOT_FOUND_MARKERS = ("not_found", "not found", "no such channel")


@dataclass(frozen=True)
class ChannelCreateRequest:
    channel_name: str
    config: ChannelConfigUpdate
    signatures: Tuple[ConfigSignature, ...]
    orderer: Optional[OrdererNode]
    tx_id: str
    submitter: Identity = field(repr=False)


@dataclass(frozen=True)
class CreateChannelResponse:
    status: str
    # Id of the transaction the orderer received, when the client knows it
    tx_id: Optional[str] = None
    info: str = ""


class OrderingService:
    # Endpoint the requests are sent to, when known
    node: Optional[OrdererNode] = None

    async def get_genesis_block(self, channel_name: str, identity: Identity) -> bytes:
        """Return the first block of the channel

        :raises ChannelNotFound: the orderer does not know the channel
        :raises TransportError: the orderer could not be reached
        """
        raise NotImplementedError

    async def create_channel(self, request: ChannelCreateRequest) -> CreateChannelResponse:
        raise NotImplementedError


@contextlib.contextmanager
def peer_cli_session(identity: Identity, ca_certs: Sequence[bytes], work_dir: str = BASE_DIR,
                     prefix: str = "peer-cli-") -> Iterator[Tuple[str, Dict[str, str]]]:
    """ Scratch folder holding the identity as an MSP folder, plus the environment the `peer` CLI needs to use it.
    The folder, private key included, is removed when the block exits.

    :returns: tuple (scratch folder, environment)
    """
    os.makedirs(work_dir, exist_ok=True)
    tmp = tempfile.mkdtemp(dir=work_dir, prefix=prefix)
    try:
        msp_dir = write_msp_dir(identity, os.path.join(tmp, "msp"), ca_certs)
        env = {
            "CORE_PEER_LOCALMSPID": identity.msp_id,
            "CORE_PEER_MSPCONFIGPATH": msp_dir,
            "CORE_PEER_TLS_ENABLED": "true",
            "FABRIC_CFG_PATH": FABRIC_CFG_PATH,
        }
        yield tmp, env
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def write_file(path: str, content: bytes) -> str:
    with open(path, "wb") as f:
        f.write(content)
    return path


class CliOrderingService(OrderingService):
    """Talks to the ordering service with the `peer channel` commands"""

    def __init__(
        self,
            network: NetworkConfig,
            runner: CommandRunner = None,
            work_dir: str = BASE_DIR,
            peer_bin: str = FABRIC_TOOLS_PEER,
    ):
        self.network = network
        self.node = network.orderer
        self.runner = runner if runner is not None else LocalRunner()
        self.work_dir = work_dir
        self.peer_bin = peer_bin

    def _orderer_args(self, cafile):
        return [
            "-o", self.node.address,
            "--ordererTLSHostnameOverride", self.node.server_hostname,
            "--tls", "--cafile", cafile,
        ]

    async def get_genesis_block(self, channel_name, identity):
        ca_certs = self.network.ca_certs_for_msp(identity.msp_id)
        with peer_cli_session(identity, ca_certs, self.work_dir, prefix="fetch-") as (tmp, env):
            cafile = write_file(os.path.join(tmp, "orderer-tls-ca.pem"), self.node.tls_trust_root)
            block_path = os.path.join(tmp, f"{channel_name}.block")
            result = await self.runner.run(
                [self.peer_bin, "channel", "fetch", "oldest", block_path, "-c", channel_name]
                + self._orderer_args(cafile),
                env=env,
            )
            if result.ok and os.path.exists(block_path):
                with open(block_path, "rb") as f:
                    return f.read()

        if looks_unreachable(result.output):
            raise TransportError(
                f"Orderer {self.node.address} unreachable while fetching channel {channel_name}: {result.output}",
                channel=channel_name)
        if any(marker in result.output.lower() for marker in _NOT_FOUND_MARKERS):
            raise ChannelNotFound(f"Channel {channel_name} does not exist", channel=channel_name)
        raise RejectedCredential(
            f"Orderer {self.node.address} refused to return the genesis block of {channel_name}: {result.output}",
            channel=channel_name)

    async def create_channel(self, request):
        envelope = build_config_update_envelope(request.config, request.signatures, request.tx_id)

        ca_certs = self.network.ca_certs_for_msp(request.submitter.msp_id)
        with peer_cli_session(request.submitter, ca_certs, self.work_dir, prefix="create-") as (tmp, env):
            cafile = write_file(os.path.join(tmp, "orderer-tls-ca.pem"), self.node.tls_trust_root)
            tx_path = write_file(os.path.join(tmp, f"{request.channel_name}.tx"), envelope)
            result = await self.runner.run(
                [self.peer_bin, "channel", "create",
                 "-c", request.channel_name,
                 "-f", tx_path,
                 "--outputBlock", os.path.join(tmp, f"{request.channel_name}.block")]
                + self._orderer_args(cafile),
                env=env,
            )

        # peer channel create adds the submitter signature and wraps the update in a new envelope
        # with its own transaction id, so request.tx_id never reaches the orderer
        if result.ok:
            return CreateChannelResponse(status=SUCCESS, info=result.output)
        match = _STATUS_RE.search(result.output)
        if match is None and looks_unreachable(result.output):
            raise TransportError(
                f"Orderer {self.node.address} unreachable while creating channel {request.channel_name}: "
                f"{result.output}",
                channel=request.channel_name)
        status = match.group(1) if match else "UNKNOWN"
        log.debug(f"Orderer answered {status} to the creation of channel {request.channel_name}")
        return CreateChannelResponse(status=status, info=result.output)
