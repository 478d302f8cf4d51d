import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Mapping, Optional

from config import DEFAULT_SETTLE_SECONDS, log
from provisioning.configtx import (ChannelConfigUpdate, ConfigSignature,
                                   ConfigSigner, extract_config_update,
                                   new_transaction_id)
from provisioning.errors import (ChannelCreationFailed, ChannelNotFound,
                                 ProvisioningError, QuorumNotMet,
                                 SignatureCollectionFailed, TransportError)
from provisioning.identity import EnrollMode, IdentityProvisioner
from provisioning.network import NetworkConfig, Organization
from provisioning.orderer import (SUCCESS, ChannelCreateRequest,
                                  OrderingService)
from provisioning.wallet import Identity

ALL_ORGANIZATIONS = "all"


class SignatureSet:
    """Signatures collected over one config update, in collection order.

    Only appended to. The identity that produced the last signature is the
    one that submits the channel creation request.
    """

    def __init__(self, config: ChannelConfigUpdate):
        self.config = config
        self._signatures: List[ConfigSignature] = []
        self._signers: List[Identity] = []

    def append(self, signature: ConfigSignature, signer: Identity):
        self._signatures.append(signature)
        self._signers.append(signer)

    @property
    def msp_ids(self):
        return [s.msp_id for s in self._signatures]

    @property
    def last_signer(self) -> Optional[Identity]:
        return self._signers[-1] if self._signers else None

    def __iter__(self) -> Iterator[ConfigSignature]:
        return iter(self._signatures)

    def __len__(self):
        return len(self._signatures)


class ChannelConfigAssembler:
    def __init__(
        self,
            network: NetworkConfig,
            provisioners: Mapping[str, IdentityProvisioner],
            signer: ConfigSigner,
            mode: EnrollMode = EnrollMode.ENROLL,
    ):
        """ Collects organization admin signatures over a channel config update.

        :param network: the network topology
        :param provisioners: identity provisioner of each organization, by organization key
        :param signer: produces one signature for an identity
        :param mode: how the signing admins are obtained
        """
        self.network = network
        self.provisioners = provisioners
        self.signer = signer
        self.mode = mode

    async def extract_config(self, envelope_bytes: bytes) -> ChannelConfigUpdate:
        config = extract_config_update(envelope_bytes)
        log.info(f"Extracted config update of channel {config.channel_name}")
        return config

    async def collect_signature(self, org: Organization, identity: Identity, config: ChannelConfigUpdate,
                                signatures: SignatureSet):
        signature = await self.signer.sign(identity, config)
        signatures.append(signature, identity)
        log.info(f"Signed config update of channel {config.channel_name} for organization {org.key}")

    async def collect_signatures(self, config: ChannelConfigUpdate, org_name: str = ALL_ORGANIZATIONS) -> SignatureSet:
        """ Collect one signature per selected organization, one organization after the other.

        :param config: the config update to sign
        :param org_name: an organization key, or "all" for every organization of the channel in configured order
        :raises UnknownOrganization: org_name is not in the topology
        :raises SignatureCollectionFailed: an organization could not sign; nothing collected is usable
        """
        if org_name == ALL_ORGANIZATIONS:
            orgs = self.network.channel_organizations(config.channel_name)
        else:
            orgs = [self.network.get_organization(org_name)]

        signatures = SignatureSet(config)
        for org in orgs:
            try:
                identity = await self.provisioners[org.key].admin_identity(self.mode)
                await self.collect_signature(org, identity, config, signatures)
            except ProvisioningError as e:
                raise SignatureCollectionFailed(
                    f"Cannot collect the signature of organization {org.key}: {e}",
                    org=org.key, channel=config.channel_name) from e
        return signatures


class ChannelState(Enum):
    NOT_CHECKED = "not-checked"
    EXISTS = "exists"
    ABSENT_OR_UNREACHABLE = "absent-or-unreachable"
    CREATED = "created"


@dataclass(frozen=True)
class ChannelStatus:
    channel_name: str
    state: ChannelState
    tx_id: Optional[str] = None


class ChannelLifecycleController:
    """Creates a channel unless its genesis block can already be fetched"""

    def __init__(self, orderer: OrderingService, settle_seconds: float = DEFAULT_SETTLE_SECONDS,
                 min_signatures: int = 1, sleep=asyncio.sleep):
        self.orderer = orderer
        self.settle_seconds = settle_seconds
        self.min_signatures = min_signatures
        self._sleep = sleep

    async def ensure_channel(self, channel_name: str, config: ChannelConfigUpdate, signatures: SignatureSet,
                             submitter: Identity, min_signatures: Optional[int] = None) -> ChannelStatus:
        """ Create the channel unless it exists. min_signatures overrides the quorum given at construction. """
        required = self.min_signatures if min_signatures is None else min_signatures
        if submitter is None:
            # Nobody signed, so nobody can query or submit
            raise QuorumNotMet(f"No organization signed the creation of channel {channel_name}", channel=channel_name)
        state = ChannelState.NOT_CHECKED
        try:
            await self.orderer.get_genesis_block(channel_name, submitter)
            state = ChannelState.EXISTS
        except (ChannelNotFound, TransportError) as e:
            log.info(f"Genesis block of channel {channel_name} not available ({e}), creating it")
            state = ChannelState.ABSENT_OR_UNREACHABLE

        if state is ChannelState.EXISTS:
            log.info(f"Channel {channel_name} already exists, skipping creation")
            return ChannelStatus(channel_name, state)

        if len(signatures) < required:
            raise QuorumNotMet(
                f"Channel {channel_name} needs {required} signatures, {len(signatures)} collected",
                channel=channel_name)

        request = ChannelCreateRequest(
            channel_name=channel_name,
            config=config,
            signatures=tuple(signatures),
            orderer=self.orderer.node,
            tx_id=new_transaction_id(submitter),
            submitter=submitter,
        )
        log.info(f"Submitting creation of channel {channel_name} with tx id {request.tx_id}")
        try:
            response = await self.orderer.create_channel(request)
        except ProvisioningError as e:
            raise e.add_context(channel=channel_name)

        if response.status != SUCCESS:
            raise ChannelCreationFailed(
                f"Orderer answered {response.status} to the creation of channel {channel_name}: {response.info}",
                channel=channel_name, tx_id=response.tx_id)

        log.info(f"Channel {channel_name} created, waiting {self.settle_seconds}s for the ordering service to settle")
        await self._sleep(self.settle_seconds)
        return ChannelStatus(channel_name, ChannelState.CREATED, tx_id=response.tx_id)
