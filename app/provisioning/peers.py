import asyncio
import os
import re
from dataclasses import dataclass, field
from typing import List, Mapping, Optional, Sequence, Tuple

from config import BASE_DIR, DEFAULT_JOIN_WORKERS, FABRIC_TOOLS_PEER, log
from container import Container
from provisioning.errors import (AlreadyMember, PartialJoinFailure,
                                 ProvisioningError, RejectedCredential,
                                 TransportError)
from provisioning.events import ContainerLogEventHub, EventHubRegistry
from provisioning.network import NetworkConfig, PeerNode
from provisioning.orderer import OrderingService, peer_cli_session, write_file
from provisioning.runner import CommandRunner, LocalRunner, looks_unreachable
from provisioning.wallet import Identity

_ALREADY_MEMBER_MARKERS = ("already exists", "ledgerid already exists")
# Seconds to wait for a peer to report that it joined
DEFAULT_JOIN_EVENT_TIMEOUT = 30.0


class PeerClient:
    async def join_channel(self, peer: PeerNode, channel_name: str, genesis_block: bytes, identity: Identity):
        """Make the peer join the channel described by the genesis block

        :raises AlreadyMember: the peer already holds the channel ledger
        """
        raise NotImplementedError


class CliPeerClient(PeerClient):
    def __init__(
        self,
            network: NetworkConfig,
            runner: CommandRunner = None,
            registry: Optional[EventHubRegistry] = None,
            work_dir: str = BASE_DIR,
            peer_bin: str = FABRIC_TOOLS_PEER,
            event_timeout: float = DEFAULT_JOIN_EVENT_TIMEOUT,
            docker_client=None,
    ):
        """ Joins peers with `peer channel join`.

        :param network: the network topology
        :param runner: how to run the binary (host or tools container)
        :param registry: where event hubs opened on peer containers are registered. Without it the
        join is considered done when the command returns
        :param event_timeout: seconds to wait for the peer to report the join
        """
        self.network = network
        self.runner = runner if runner is not None else LocalRunner()
        self.registry = registry
        self.work_dir = work_dir
        self.peer_bin = peer_bin
        self.event_timeout = event_timeout
        self.docker_client = docker_client

    def _open_event_hub(self, peer, channel_name):
        if self.registry is None or peer.container is None:
            return None
        hub = ContainerLogEventHub(f"{peer.name}/{channel_name}", Container(peer.container, self.docker_client))
        self.registry.register_handle(hub)
        try:
            hub.connect()
        except Exception:
            self.registry.unregister_handle(hub.handle_id)
            raise
        return hub

    def _close_event_hub(self, hub):
        if hub is not None:
            self.registry.unregister_handle(hub.handle_id)
            hub.disconnect()

    async def join_channel(self, peer, channel_name, genesis_block, identity):
        hub = self._open_event_hub(peer, channel_name)
        try:
            ca_certs = self.network.ca_certs_for_msp(identity.msp_id)
            with peer_cli_session(identity, ca_certs, self.work_dir, prefix="join-") as (tmp, env):
                env.update({
                    "CORE_PEER_ADDRESS": peer.address,
                    "CORE_PEER_TLS_ROOTCERT_FILE": write_file(os.path.join(tmp, "peer-tls-ca.pem"),
                                                              peer.tls_trust_root),
                    "CORE_PEER_TLS_SERVERHOSTOVERRIDE": peer.server_hostname,
                })
                block_path = write_file(os.path.join(tmp, f"{channel_name}.block"), genesis_block)
                result = await self.runner.run([self.peer_bin, "channel", "join", "-b", block_path], env=env)

            if not result.ok:
                lowered = result.output.lower()
                if any(marker in lowered for marker in _ALREADY_MEMBER_MARKERS):
                    raise AlreadyMember(f"Peer {peer.name} already joined channel {channel_name}",
                                        peer=peer.name, channel=channel_name)
                if looks_unreachable(result.output):
                    raise TransportError(f"Peer {peer.name} at {peer.address} unreachable: {result.output}",
                                         peer=peer.name, channel=channel_name)
                raise RejectedCredential(f"Peer {peer.name} refused to join channel {channel_name}: {result.output}",
                                         peer=peer.name, channel=channel_name)

            if hub is not None:
                pattern = rf"Joining gossip network of channel {re.escape(channel_name)}\b"
                await hub.wait_for(pattern, self.event_timeout)
            log.info(f"Peer {peer.name} joined channel {channel_name}")
        finally:
            self._close_event_hub(hub)


@dataclass(frozen=True)
class JoinOutcome:
    org: str
    peer: str
    error: Optional[ProvisioningError] = field(default=None, compare=False)
    already_member: bool = False

    @property
    def ok(self):
        return self.error is None


@dataclass
class JoinReport:
    channel_name: str
    outcomes: List[JoinOutcome] = field(default_factory=list)

    @property
    def joined(self) -> List[str]:
        return [o.peer for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[JoinOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self):
        return not self.failed

    def summary(self):
        lines = [f"{len(self.joined)}/{len(self.outcomes)} peers joined channel {self.channel_name}"]
        for outcome in self.failed:
            lines.append(f"  {outcome.peer} ({outcome.org}): {outcome.error}")
        return "\n".join(lines)


class PeerJoinController:
    def __init__(self, orderer: OrderingService, peer_client: PeerClient,
                 max_concurrency: int = DEFAULT_JOIN_WORKERS):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.orderer = orderer
        self.peer_client = peer_client
        self.max_concurrency = max_concurrency

    async def join_all(self, channel_name: str,
                       peers_by_org: Mapping[str, Tuple[Identity, Sequence[PeerNode]]]) -> JoinReport:
        """ Join every peer to the channel, each with the admin identity of its organization.

        Every peer is attempted even when others fail.

        :param peers_by_org: organization key -> (admin identity, peers)
        :raises PartialJoinFailure: at least one peer failed; the error carries the full report
        """
        if not peers_by_org:
            return JoinReport(channel_name)
        # The genesis block is the same for every peer
        first_identity = next(iter(peers_by_org.values()))[0]
        genesis_block = await self.orderer.get_genesis_block(channel_name, first_identity)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def join_one(org_key, identity, peer):
            async with semaphore:
                try:
                    await self.peer_client.join_channel(peer, channel_name, genesis_block, identity)
                except AlreadyMember:
                    log.info(f"Peer {peer.name} is already a member of channel {channel_name}")
                    return JoinOutcome(org_key, peer.name, already_member=True)
                except ProvisioningError as e:
                    error = e
                except Exception as e:
                    # e.g. a full scratch disk
                    error = ProvisioningError(f"Peer {peer.name} could not be joined: {e!r}")
                    error.__cause__ = e
                else:
                    return JoinOutcome(org_key, peer.name)
                error.add_context(org=org_key, peer=peer.name, channel=channel_name)
                log.error(f"Peer {peer.name} failed to join channel {channel_name}: {error}")
                return JoinOutcome(org_key, peer.name, error=error)

        outcomes = await asyncio.gather(*(
            join_one(org_key, identity, peer)
            for org_key, (identity, peers) in peers_by_org.items()
            for peer in peers
        ))
        report = JoinReport(channel_name, list(outcomes))
        log.info(report.summary())
        if not report.ok:
            raise PartialJoinFailure(
                f"{len(report.failed)} of {len(report.outcomes)} peers failed to join channel {channel_name}",
                report, channel=channel_name)
        return report
