import asyncio
import dataclasses

import docker
import pytest

from fakes import (FakeDockerClient, FakeDockerContainer, FakeOrderer,
                   FakePeerClient, ScriptedRunner, arg_after, make_network,
                   make_org)
from provisioning.errors import (AlreadyMember, PartialJoinFailure,
                                 ProvisioningError, RejectedCredential,
                                 TransportError)
from provisioning.events import EventHubRegistry
from provisioning.peers import CliPeerClient, PeerJoinController
from provisioning.wallet import Identity, Role

ADMIN_A = Identity("a-admin", Role.ADMIN, "CERT-A", "KEY-A", "AMSP")
ADMIN_B = Identity("b-admin", Role.ADMIN, "CERT-B", "KEY-B", "BMSP")


def _join(controller, peers_by_org, channel="mychannel"):
    return asyncio.run(controller.join_all(channel, peers_by_org))


def test_one_failing_peer_does_not_stop_the_others():
    org = make_org("a", n_peers=3)
    peer1, peer2, peer3 = org.peers
    peer_client = FakePeerClient(failing={peer2.name})
    controller = PeerJoinController(FakeOrderer(existing={"mychannel"}), peer_client)

    with pytest.raises(PartialJoinFailure) as excinfo:
        _join(controller, {"a": (ADMIN_A, org.peers)})

    report = excinfo.value.report
    assert report.joined == [peer1.name, peer3.name]
    assert [o.peer for o in report.failed] == [peer2.name]
    assert isinstance(report.failed[0].error, RejectedCredential)
    assert report.failed[0].error.context["peer"] == peer2.name
    assert sorted(c[0] for c in peer_client.calls) == sorted(p.name for p in org.peers)


def test_unexpected_error_is_reported_with_the_other_outcomes():
    org = make_org("a", n_peers=3)
    peer1, peer2, peer3 = org.peers
    disk_full = OSError(28, "No space left on device")
    peer_client = FakePeerClient(errors={peer2.name: disk_full})
    controller = PeerJoinController(FakeOrderer(existing={"mychannel"}), peer_client)

    with pytest.raises(PartialJoinFailure) as excinfo:
        _join(controller, {"a": (ADMIN_A, org.peers)})

    report = excinfo.value.report
    assert report.joined == [peer1.name, peer3.name]
    error = report.failed[0].error
    assert isinstance(error, ProvisioningError)
    assert error.__cause__ is disk_full
    assert error.context == {"org": "a", "peer": peer2.name, "channel": "mychannel"}


def test_already_member_counts_as_joined():
    org = make_org("a", n_peers=2)
    peer_client = FakePeerClient(members={org.peers[0].name})
    controller = PeerJoinController(FakeOrderer(existing={"mychannel"}), peer_client)

    report = _join(controller, {"a": (ADMIN_A, org.peers)})

    assert report.ok
    assert report.joined == [p.name for p in org.peers]
    assert report.outcomes[0].already_member


def test_peers_join_with_their_organization_identity():
    network = make_network(("a", "b"), n_peers=2)
    orderer = FakeOrderer(existing={"mychannel"})
    peer_client = FakePeerClient()
    controller = PeerJoinController(orderer, peer_client)
    a, b = network.organizations

    report = _join(controller, {"a": (ADMIN_A, a.peers), "b": (ADMIN_B, b.peers)})

    assert len(report.joined) == 4
    assert {(c[0], c[2]) for c in peer_client.calls} == {
        (a.peers[0].name, "a-admin"), (a.peers[1].name, "a-admin"),
        (b.peers[0].name, "b-admin"), (b.peers[1].name, "b-admin"),
    }
    # The genesis block is fetched once for all peers
    assert len(orderer.genesis_calls) == 1


def test_concurrency_is_bounded():
    org = make_org("a", n_peers=6)
    peer_client = FakePeerClient()
    controller = PeerJoinController(FakeOrderer(existing={"mychannel"}), peer_client, max_concurrency=2)

    _join(controller, {"a": (ADMIN_A, org.peers)})

    assert len(peer_client.calls) == 6
    assert peer_client.max_active == 2


def test_no_peers():
    orderer = FakeOrderer()
    report = _join(PeerJoinController(orderer, FakePeerClient()), {})
    assert report.ok and report.outcomes == []
    assert orderer.genesis_calls == []


def test_invalid_concurrency():
    with pytest.raises(ValueError):
        PeerJoinController(FakeOrderer(), FakePeerClient(), max_concurrency=0)


def _cli_client(runner, work_dir, **kwargs):
    return CliPeerClient(make_network(("a",)), runner=runner, work_dir=work_dir, peer_bin="peer", **kwargs)


def test_cli_join(work_dir):
    def answer(args, env):
        with open(arg_after(args, "-b"), "rb") as f:
            assert f.read() == b"GENESIS"
        return 0, "", "Successfully submitted proposal to join channel"

    runner = ScriptedRunner(answer)
    peer = make_org("a").peers[0]

    asyncio.run(_cli_client(runner, work_dir).join_channel(peer, "mychannel", b"GENESIS", ADMIN_A))

    call = runner.calls[0]
    assert call["args"][:3] == ["peer", "channel", "join"]
    assert call["env"]["CORE_PEER_ADDRESS"] == "peer1.a.example.com:7051"
    assert call["env"]["CORE_PEER_LOCALMSPID"] == "AMSP"
    assert call["env"]["CORE_PEER_TLS_SERVERHOSTOVERRIDE"] == "peer1.a.example.com"


@pytest.mark.parametrize("output, exc_cls", [
    ("Error: proposal failed (err: LedgerID already exists)", AlreadyMember),
    ("Error: error getting endorser client: connection refused", TransportError),
    ("Error: access denied: channel [] creator org [BMSP]", RejectedCredential),
])
def test_cli_join_failures(work_dir, output, exc_cls):
    runner = ScriptedRunner((1, "", output))
    peer = make_org("a").peers[0]
    with pytest.raises(exc_cls):
        asyncio.run(_cli_client(runner, work_dir).join_channel(peer, "mychannel", b"GENESIS", ADMIN_A))


def test_cli_join_waits_for_the_peer_event(work_dir):
    peer = dataclasses.replace(make_org("a").peers[0], container="peer1.a")
    docker_container = FakeDockerContainer([
        b"2024-01-01 INFO [ledgermgmt] Created ledger [mychannel]\n2024-01-01 INFO [gossip",
        b".service] Joining gossip network of channel mychannel with 1 organizations\n",
    ])
    registry = EventHubRegistry()
    seen = {}

    def answer(args, env):
        seen["registered"] = "peer1.a.example.com/mychannel" in registry
        return 0, "", ""

    client = _cli_client(ScriptedRunner(answer), work_dir, registry=registry,
                         docker_client=FakeDockerClient({"peer1.a": docker_container}))
    asyncio.run(client.join_channel(peer, "mychannel", b"GENESIS", ADMIN_A))

    assert seen["registered"]
    assert len(registry) == 0
    assert docker_container.streams[0].closed


def test_cli_join_without_peer_event(work_dir):
    peer = dataclasses.replace(make_org("a").peers[0], container="peer1.a")
    docker_container = FakeDockerContainer([b"unrelated line\n"])
    registry = EventHubRegistry()
    client = _cli_client(ScriptedRunner((0, "", "")), work_dir, registry=registry,
                         docker_client=FakeDockerClient({"peer1.a": docker_container}))

    with pytest.raises(TransportError):
        asyncio.run(client.join_channel(peer, "mychannel", b"GENESIS", ADMIN_A))
    assert len(registry) == 0
    assert docker_container.streams[0].closed


def test_cli_join_with_unreadable_peer_logs(work_dir):
    peer = dataclasses.replace(make_org("a").peers[0], container="peer1.a")
    docker_container = FakeDockerContainer([], logs_error=docker.errors.APIError("500 Server Error"))
    registry = EventHubRegistry()
    runner = ScriptedRunner((0, "", ""))
    client = _cli_client(runner, work_dir, registry=registry,
                         docker_client=FakeDockerClient({"peer1.a": docker_container}))

    with pytest.raises(TransportError, match="logs of container peer1.a"):
        asyncio.run(client.join_channel(peer, "mychannel", b"GENESIS", ADMIN_A))
    assert len(registry) == 0
    assert runner.calls == []
