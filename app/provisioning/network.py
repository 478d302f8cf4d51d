import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import yaml

from config import log
from provisioning.errors import TopologyError, UnknownOrganization

# Example of the topology file consumed by load_network_config():
#
# name: trade-network
# orderer:
#   url: grpcs://localhost:7050
#   server_hostname: orderer.trade.com
#   mspid: TradeOrdererMSP
#   tls_cacerts: crypto-config/ordererOrganizations/trade.com/orderers/orderer.trade.com/msp/tlscacerts/tlsca.trade.com-cert.pem
#   admin_msp: crypto-config/ordererOrganizations/trade.com/users/Admin@trade.com/msp
# organizations:
#   exporterorg:
#     name: ExporterOrg
#     mspid: ExporterOrgMSP
#     admin_msp: crypto-config/peerOrganizations/exporterorg.trade.com/users/Admin@exporterorg.trade.com/msp
#     ca:
#       url: https://localhost:7054
#       name: ca-exporterorg
#       tls_cacerts: crypto-config/peerOrganizations/exporterorg.trade.com/ca/ca.exporterorg.trade.com-cert.pem
#       registrar: {enroll_id: admin, enroll_secret: adminpw}
#       affiliation: org1.department1
#     peers:
#       - name: peer0.exporterorg.trade.com
#         url: grpcs://localhost:7051
#         tls_cacerts: crypto-config/peerOrganizations/exporterorg.trade.com/peers/peer0.exporterorg.trade.com/msp/tlscacerts/tlsca.exporterorg.trade.com-cert.pem
#         container: peer0.exporterorg.trade.com
# channels:
#   tradechannel:
#     config_tx: channel-artifacts/tradechannel.tx
#     organizations: [exporterorg, importerorg]
#     min_signatures: 1

DEFAULT_AFFILIATION = "org1.department1"
DEFAULT_REGISTRAR_ID = "admin"
DEFAULT_REGISTRAR_SECRET = "adminpw"


@dataclass(frozen=True)
class RegistrarCredential:
    enroll_id: str
    enroll_secret: str = field(repr=False)


@dataclass(frozen=True)
class CertAuthorityConfig:
    url: str
    name: str
    tls_trust_root: bytes = field(repr=False)
    registrar: RegistrarCredential
    affiliation: str = DEFAULT_AFFILIATION


@dataclass(frozen=True)
class PeerNode:
    name: str
    url: str
    server_hostname: str
    tls_trust_root: bytes = field(repr=False)
    container: Optional[str] = None

    @property
    def address(self):
        """Returns the peer endpoint formatted as <host>:<port>"""
        return urlsplit(self.url).netloc


@dataclass(frozen=True)
class OrdererNode:
    url: str
    server_hostname: str
    msp_id: str
    tls_trust_root: bytes = field(repr=False)
    admin_msp_dir: Optional[str] = None

    @property
    def address(self):
        return urlsplit(self.url).netloc


@dataclass(frozen=True)
class Organization:
    key: str
    name: str
    msp_id: str
    ca: CertAuthorityConfig
    admin_msp_dir: Optional[str] = None
    peers: Tuple[PeerNode, ...] = ()
    # Root certificates of the organization's MSP. Defaults to the CA trust root.
    msp_ca_certs: Tuple[bytes, ...] = field(default=(), repr=False)

    @property
    def admin_label(self):
        # 'admin' is reserved for the registrar
        return f"{self.key}-admin"


@dataclass(frozen=True)
class ChannelSettings:
    name: str
    config_tx: Optional[str] = None
    organizations: Tuple[str, ...] = ()
    min_signatures: int = 1


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    orderer: OrdererNode
    organizations: Tuple[Organization, ...]
    channels: Tuple[ChannelSettings, ...] = ()

    def get_organization(self, key: str) -> Organization:
        for org in self.organizations:
            if org.key == key:
                return org
        raise UnknownOrganization(f"Cannot find org \"{key}\" in network configuration")

    def get_channel(self, channel_name: str) -> ChannelSettings:
        for ch in self.channels:
            if ch.name == channel_name:
                return ch
        # Unlisted channels include every organization
        return ChannelSettings(name=channel_name, organizations=tuple(o.key for o in self.organizations))

    def channel_organizations(self, channel_name: str) -> List[Organization]:
        """Returns the organizations of a channel, in configuration order"""
        return [self.get_organization(key) for key in self.get_channel(channel_name).organizations]

    def ca_certs_for_msp(self, msp_id: str) -> Tuple[bytes, ...]:
        if msp_id == self.orderer.msp_id:
            return (self.orderer.tls_trust_root,)
        for org in self.organizations:
            if org.msp_id == msp_id:
                return org.msp_ca_certs or (org.ca.tls_trust_root,)
        raise UnknownOrganization(f"No organization with MSP ID \"{msp_id}\"")


def _require(node: Dict, key: str, where: str):
    if not isinstance(node, dict) or node.get(key) in (None, ""):
        raise TopologyError(f"Missing \"{key}\" in {where}")
    return node[key]


def _read_pem(base_dir: str, rel_path: str, where: str) -> bytes:
    path = rel_path if os.path.isabs(rel_path) else os.path.join(base_dir, rel_path)
    if not os.path.exists(path):
        raise TopologyError(f"File {path} not found ({where})")
    with open(path, "rb") as f:
        return f.read()


def _resolve(base_dir: str, rel_path: Optional[str]) -> Optional[str]:
    if rel_path is None:
        return None
    return rel_path if os.path.isabs(rel_path) else os.path.normpath(os.path.join(base_dir, rel_path))


def _parse_peer(node: Dict, base_dir: str, where: str) -> PeerNode:
    name = _require(node, "name", where)
    return PeerNode(
        name=name,
        url=_require(node, "url", where),
        server_hostname=node.get("server_hostname", name),
        tls_trust_root=_read_pem(base_dir, _require(node, "tls_cacerts", where), where),
        container=node.get("container"),
    )


def _parse_org(key: str, node: Dict, base_dir: str) -> Organization:
    where = f"organization {key}"
    ca_node = _require(node, "ca", where)
    registrar = ca_node.get("registrar") or {}
    ca = CertAuthorityConfig(
        url=_require(ca_node, "url", where + " ca"),
        name=ca_node.get("name", f"ca-{key}"),
        tls_trust_root=_read_pem(base_dir, _require(ca_node, "tls_cacerts", where + " ca"), where),
        registrar=RegistrarCredential(
            enroll_id=registrar.get("enroll_id", DEFAULT_REGISTRAR_ID),
            enroll_secret=registrar.get("enroll_secret", DEFAULT_REGISTRAR_SECRET),
        ),
        affiliation=ca_node.get("affiliation", DEFAULT_AFFILIATION),
    )
    msp_ca_certs = tuple(_read_pem(base_dir, p, where) for p in node.get("msp_cacerts", []))
    return Organization(
        key=key,
        name=node.get("name", key),
        msp_id=_require(node, "mspid", where),
        ca=ca,
        admin_msp_dir=_resolve(base_dir, node.get("admin_msp")),
        peers=tuple(_parse_peer(p, base_dir, where) for p in node.get("peers", [])),
        msp_ca_certs=msp_ca_certs,
    )


def parse_network_config(raw: Dict, base_dir: str) -> NetworkConfig:
    """ Build the immutable network configuration from a parsed topology document.

    :param raw: the topology as loaded from YAML
    :type raw: dict
    :param base_dir: directory that relative paths in the topology refer to
    :type base_dir: str
    """
    if not isinstance(raw, dict):
        raise TopologyError("Topology must be a mapping")
    orderer_node = _require(raw, "orderer", "topology")
    orderer = OrdererNode(
        url=_require(orderer_node, "url", "orderer"),
        server_hostname=_require(orderer_node, "server_hostname", "orderer"),
        msp_id=_require(orderer_node, "mspid", "orderer"),
        tls_trust_root=_read_pem(base_dir, _require(orderer_node, "tls_cacerts", "orderer"), "orderer"),
        admin_msp_dir=_resolve(base_dir, orderer_node.get("admin_msp")),
    )

    orgs_node = _require(raw, "organizations", "topology")
    organizations = tuple(_parse_org(key, node, base_dir) for key, node in orgs_node.items())
    if len({o.msp_id for o in organizations}) != len(organizations):
        raise TopologyError("MSP IDs must be unique per organization")

    channels = []
    org_keys = [o.key for o in organizations]
    for ch_name, ch_node in (raw.get("channels") or {}).items():
        ch_node = ch_node or {}
        ch_orgs = tuple(ch_node.get("organizations", org_keys) or ())
        if not ch_orgs:
            raise TopologyError(f"Channel {ch_name} has no organizations")
        for key in ch_orgs:
            if key not in org_keys:
                raise TopologyError(f"Channel {ch_name} references unknown organization {key}")
        channels.append(ChannelSettings(
            name=ch_name,
            config_tx=_resolve(base_dir, ch_node.get("config_tx")),
            organizations=ch_orgs,
            min_signatures=int(ch_node.get("min_signatures", 1)),
        ))

    return NetworkConfig(
        name=raw.get("name", "fabric-network"),
        orderer=orderer,
        organizations=organizations,
        channels=tuple(channels),
    )


def load_network_config(path: str) -> NetworkConfig:
    """ Load the topology YAML file. Relative paths resolve against the file's directory. """
    if not os.path.exists(path):
        raise TopologyError(f"File {path} not found")
    with open(path, "r") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise TopologyError(f"Invalid topology file {path}: {e}") from e
    net = parse_network_config(raw, os.path.dirname(os.path.abspath(path)))
    log.info(f"Loaded network {net.name} with organizations {[o.key for o in net.organizations]}")
    return net
