"""Fabric protobuf messages needed to read and write channel creation transactions.

Only the fields used here are declared. Byte fields holding nested messages
(Envelope.payload, ConfigUpdateEnvelope.config_update, ...) are kept as bytes,
so a parsed config update is signed and submitted exactly as configtxgen wrote it.
"""
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

_F = descriptor_pb2.FieldDescriptorProto

# message -> (field, number, scalar type or message name, repeated)
_MESSAGES = {
    "Envelope": [
        ("payload", 1, _F.TYPE_BYTES, False),
        ("signature", 2, _F.TYPE_BYTES, False),
    ],
    "Payload": [
        ("header", 1, "Header", False),
        ("data", 2, _F.TYPE_BYTES, False),
    ],
    "Header": [
        ("channel_header", 1, _F.TYPE_BYTES, False),
        ("signature_header", 2, _F.TYPE_BYTES, False),
    ],
    "ChannelHeader": [
        ("type", 1, _F.TYPE_INT32, False),
        ("version", 2, _F.TYPE_INT32, False),
        ("channel_id", 4, _F.TYPE_STRING, False),
        ("tx_id", 5, _F.TYPE_STRING, False),
        ("epoch", 6, _F.TYPE_UINT64, False),
    ],
    "SignatureHeader": [
        ("creator", 1, _F.TYPE_BYTES, False),
        ("nonce", 2, _F.TYPE_BYTES, False),
    ],
    # msp.SerializedIdentity
    "SerializedIdentity": [
        ("mspid", 1, _F.TYPE_STRING, False),
        ("id_bytes", 2, _F.TYPE_BYTES, False),
    ],
    "ConfigUpdateEnvelope": [
        ("config_update", 1, _F.TYPE_BYTES, False),
        ("signatures", 2, "ConfigSignature", True),
    ],
    "ConfigSignature": [
        ("signature_header", 1, _F.TYPE_BYTES, False),
        ("signature", 2, _F.TYPE_BYTES, False),
    ],
    "ConfigUpdate": [
        ("channel_id", 1, _F.TYPE_STRING, False),
    ],
}


def _build_pool():
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="provisioning/fabric_common.proto", package="common", syntax="proto3")
    for message_name, fields in _MESSAGES.items():
        message = file_proto.message_type.add(name=message_name)
        for field_name, number, field_type, repeated in fields:
            field = message.field.add(
                name=field_name,
                number=number,
                label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
            )
            if isinstance(field_type, str):
                field.type = _F.TYPE_MESSAGE
                field.type_name = f".common.{field_type}"
            else:
                field.type = field_type
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return pool


_POOL = _build_pool()


def _message_class(name):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"common.{name}"))


Envelope = _message_class("Envelope")
Payload = _message_class("Payload")
Header = _message_class("Header")
ChannelHeader = _message_class("ChannelHeader")
SignatureHeader = _message_class("SignatureHeader")
SerializedIdentity = _message_class("SerializedIdentity")
ConfigUpdateEnvelope = _message_class("ConfigUpdateEnvelope")
ConfigSignature = _message_class("ConfigSignature")
ConfigUpdate = _message_class("ConfigUpdate")
