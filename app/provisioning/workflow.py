import os
from dataclasses import dataclass
from typing import Dict, Optional

from config import (BASE_DIR, DEFAULT_JOIN_WORKERS, DEFAULT_SETTLE_SECONDS,
                    WALLET_DIR, log)
from container import Container
from provisioning.ca import FabricCaClient
from provisioning.channels import (ALL_ORGANIZATIONS, ChannelConfigAssembler,
                                   ChannelLifecycleController, ChannelState)
from provisioning.configtx import EcdsaConfigSigner
from provisioning.errors import ProvisioningError, TopologyError
from provisioning.events import EventHubRegistry
from provisioning.identity import EnrollMode, IdentityProvisioner
from provisioning.network import NetworkConfig
from provisioning.orderer import CliOrderingService
from provisioning.peers import CliPeerClient, JoinReport, PeerJoinController
from provisioning.runner import ContainerRunner, LocalRunner
from provisioning.wallet import FileSystemWallet, Identity, Role


@dataclass(frozen=True)
class WorkflowResult:
    channel: str
    state: ChannelState
    join_report: Optional[JoinReport] = None


class ChannelProvisioningWorkflow:
    """Creates a channel and joins the peers of its organizations.

    Every event hub opened along the way is released when run() returns or
    raises.
    """

    def __init__(
        self,
            network: NetworkConfig,
            provisioners: Dict[str, IdentityProvisioner],
            assembler: ChannelConfigAssembler,
            lifecycle: ChannelLifecycleController,
            joiner: PeerJoinController,
            registry: EventHubRegistry,
            mode: EnrollMode = EnrollMode.ENROLL,
    ):
        self.network = network
        self.provisioners = provisioners
        self.assembler = assembler
        self.lifecycle = lifecycle
        self.joiner = joiner
        self.registry = registry
        self.mode = mode

    def _provisioner(self, org_key):
        org = self.network.get_organization(org_key)
        return self.provisioners[org.key]

    async def create_channel(self, channel_name: str, org_name: str = ALL_ORGANIZATIONS,
                             config_tx_path: Optional[str] = None) -> ChannelState:
        settings = self.network.get_channel(channel_name)
        config_tx_path = config_tx_path or settings.config_tx
        if config_tx_path is None:
            raise TopologyError(f"No channel transaction file configured for channel {channel_name}")
        if not os.path.exists(config_tx_path):
            raise TopologyError(f"File {config_tx_path} not found", channel=channel_name)
        with open(config_tx_path, "rb") as f:
            envelope = f.read()

        config = await self.assembler.extract_config(envelope)
        if config.channel_name != channel_name:
            raise TopologyError(
                f"{config_tx_path} creates channel {config.channel_name}, not {channel_name}", channel=channel_name)
        signatures = await self.assembler.collect_signatures(config, org_name)
        status = await self.lifecycle.ensure_channel(
            channel_name, config, signatures, signatures.last_signer, min_signatures=settings.min_signatures)
        return status.state

    async def join_peers(self, channel_name: str) -> JoinReport:
        """Join the peers of every organization of the channel, whichever organizations signed"""
        peers_by_org = {}
        for org in self.network.channel_organizations(channel_name):
            identity = await self.provisioners[org.key].admin_identity(self.mode)
            peers_by_org[org.key] = (identity, org.peers)
        return await self.joiner.join_all(channel_name, peers_by_org)

    async def run(self, channel_name: str, org_name: str = ALL_ORGANIZATIONS,
                  config_tx_path: Optional[str] = None) -> WorkflowResult:
        async with self.registry.scope():
            try:
                state = await self.create_channel(channel_name, org_name, config_tx_path)
            except ProvisioningError as e:
                log.error(f"\n\n----------------------------\nCHANNEL CREATION FAILED: {e}\n----------------------------\n")
                raise
            log.info("\n\n----------------------------\nCHANNEL CREATION COMPLETE\n----------------------------\n")

            try:
                report = await self.join_peers(channel_name)
            except ProvisioningError as e:
                log.error(f"\n\n----------------------------\nCHANNEL JOIN FAILED: {e}\n----------------------------\n")
                raise
            log.info("\n\n----------------------------\nCHANNEL JOIN COMPLETE\n----------------------------\n")
            return WorkflowResult(channel_name, state, report)

    async def enroll_user(self, org_key: str, user: str, is_admin: bool = False) -> Identity:
        """Enroll the registrar of the organization, then register and enroll the user"""
        provisioner = self._provisioner(org_key)
        async with self.registry.scope():
            await provisioner.ensure_registrar()
            return await provisioner.ensure_enrolled(user, Role.ADMIN if is_admin else Role.CLIENT)

    async def load_user(self, org_key: str, user: str, msp_dir: str, is_admin: bool = False) -> Identity:
        """Import the credentials of an MSP folder generated by cryptogen"""
        provisioner = self._provisioner(org_key)
        async with self.registry.scope():
            return await provisioner.load_from_msp(user, msp_dir, Role.ADMIN if is_admin else Role.CLIENT)


def build_cli_workflow(
    network: NetworkConfig,
        mode: EnrollMode = EnrollMode.ENROLL,
        wallet_dir: str = WALLET_DIR,
        work_dir: str = BASE_DIR,
        tools_container: Optional[str] = None,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        join_workers: int = DEFAULT_JOIN_WORKERS,
        docker_client=None,
) -> ChannelProvisioningWorkflow:
    """ Wire the workflow on top of the Fabric binaries.

    :param network: the network topology
    :param mode: how organization admins are obtained
    :param wallet_dir: one wallet folder per organization is kept under it
    :param work_dir: scratch folder for MSP folders and channel artifacts
    :param tools_container: run the binaries in this container instead of on the host
    """
    if tools_container:
        runner = ContainerRunner(Container(tools_container, docker_client))
    else:
        runner = LocalRunner()

    registry = EventHubRegistry()
    provisioners = {
        org.key: IdentityProvisioner(
            org,
            FabricCaClient(org.ca, network.ca_certs_for_msp(org.msp_id), runner=runner, work_dir=work_dir),
            FileSystemWallet(os.path.join(wallet_dir, org.key)),
        )
        for org in network.organizations
    }
    orderer = CliOrderingService(network, runner=runner, work_dir=work_dir)
    peer_client = CliPeerClient(network, runner=runner, registry=registry, work_dir=work_dir,
                                docker_client=docker_client)
    return ChannelProvisioningWorkflow(
        network=network,
        provisioners=provisioners,
        assembler=ChannelConfigAssembler(network, provisioners, EcdsaConfigSigner(), mode),
        lifecycle=ChannelLifecycleController(orderer, settle_seconds=settle_seconds),
        joiner=PeerJoinController(orderer, peer_client, max_concurrency=join_workers),
        registry=registry,
        mode=mode,
    )
