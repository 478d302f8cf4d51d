import hashlib
import secrets
from dataclasses import dataclass, field
from typing import Sequence

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature, encode_dss_signature)
from google.protobuf.message import DecodeError

from config import log
from provisioning import protos
from provisioning.errors import ProvisioningError, RejectedCredential
from provisioning.wallet import Identity

# common.HeaderType.CONFIG_UPDATE
CONFIG_UPDATE_HEADER_TYPE = 2

# Group orders of the curves Fabric accepts, needed to produce low-S signatures
_CURVE_ORDERS = {
    "secp256r1": 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551,
    "secp384r1": int(
        "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFC7634D81F4372DDF581A0DB248B0A77AECEC196ACCC52973", 16),
}


class InvalidEnvelope(ProvisioningError):
    """The channel transaction file does not hold a config update"""


@dataclass(frozen=True)
class ChannelConfigUpdate:
    """The serialized common.ConfigUpdate of a channel transaction, as found in the file"""
    channel_name: str
    update_bytes: bytes = field(repr=False)


@dataclass(frozen=True)
class ConfigSignature:
    msp_id: str
    signature_header: bytes = field(repr=False)
    signature: bytes = field(repr=False)


def extract_config_update(envelope_bytes: bytes) -> ChannelConfigUpdate:
    """ Extract the config update from a channel creation transaction (the .tx file built by configtxgen).
    The update bytes are never re-serialized.
    """
    try:
        envelope = protos.Envelope.FromString(envelope_bytes)
        payload = protos.Payload.FromString(envelope.payload)
        channel_header = protos.ChannelHeader.FromString(payload.header.channel_header)
        update_envelope = protos.ConfigUpdateEnvelope.FromString(payload.data)
        update = protos.ConfigUpdate.FromString(update_envelope.config_update)
    except DecodeError as e:
        raise InvalidEnvelope(f"Not a channel transaction: {e}") from e

    if channel_header.type != CONFIG_UPDATE_HEADER_TYPE:
        raise InvalidEnvelope(f"Envelope header type is {channel_header.type}, expected CONFIG_UPDATE")
    if not update_envelope.config_update:
        raise InvalidEnvelope("Envelope does not contain a config update")

    return ChannelConfigUpdate(
        channel_name=update.channel_id or channel_header.channel_id,
        update_bytes=bytes(update_envelope.config_update),
    )


def build_config_update_envelope(config: ChannelConfigUpdate, signatures: Sequence[ConfigSignature],
                                 tx_id: str) -> bytes:
    """ Reassemble the channel creation transaction from the update and the collected signatures. """
    update_envelope = protos.ConfigUpdateEnvelope(
        config_update=config.update_bytes,
        signatures=[
            protos.ConfigSignature(signature_header=s.signature_header, signature=s.signature)
            for s in signatures
        ],
    )
    channel_header = protos.ChannelHeader(
        type=CONFIG_UPDATE_HEADER_TYPE,
        channel_id=config.channel_name,
        tx_id=tx_id,
    )
    payload = protos.Payload(
        header=protos.Header(channel_header=channel_header.SerializeToString()),
        data=update_envelope.SerializeToString(),
    )
    return protos.Envelope(payload=payload.SerializeToString()).SerializeToString()


def new_transaction_id(creator: Identity) -> str:
    """ A fresh transaction id: hex SHA-256 of a random nonce followed by the creator identity. """
    nonce = secrets.token_bytes(24)
    return hashlib.sha256(nonce + creator.msp_id.encode("utf-8") + creator.certificate.encode("utf-8")).hexdigest()


def _low_s(der_signature, curve_name):
    # Fabric rejects ECDSA signatures whose S lies in the upper half of the group order
    order = _CURVE_ORDERS.get(curve_name)
    if order is None:
        raise RejectedCredential(f"Unsupported curve {curve_name}")
    r, s = decode_dss_signature(der_signature)
    if s > order // 2:
        s = order - s
    return encode_dss_signature(r, s)


class ConfigSigner:
    async def sign(self, identity: Identity, config: ChannelConfigUpdate) -> ConfigSignature:
        raise NotImplementedError


class EcdsaConfigSigner(ConfigSigner):
    """Signs config updates in-process with the identity's ECDSA key"""

    async def sign(self, identity, config):
        creator = protos.SerializedIdentity(mspid=identity.msp_id, id_bytes=identity.certificate.encode("utf-8"))
        header_bytes = protos.SignatureHeader(
            creator=creator.SerializeToString(),
            nonce=secrets.token_bytes(24),
        ).SerializeToString()

        try:
            key = serialization.load_pem_private_key(identity.private_key.encode("utf-8"), password=None)
        except ValueError as e:
            raise RejectedCredential(f"Cannot read the private key of {identity.label}: {e}") from e
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise RejectedCredential(f"The key of {identity.label} is not an ECDSA key")

        der = key.sign(header_bytes + config.update_bytes, ec.ECDSA(hashes.SHA256()))
        log.debug(f"Signed config update of channel {config.channel_name} as {identity.label} ({identity.msp_id})")
        return ConfigSignature(
            msp_id=identity.msp_id,
            signature_header=header_bytes,
            signature=_low_s(der, key.curve.name),
        )
