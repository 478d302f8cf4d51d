from typing import Dict


class ProvisioningError(Exception):
    """Base class of every failure raised while provisioning identities and channels.

    Errors keep their type while they travel up; each level only adds
    context (organization, peer, channel) with :meth:`add_context`.
    """

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, str] = {k: v for k, v in context.items() if v is not None}

    def add_context(self, **context):
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def __str__(self):
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} [{ctx}]"


class TopologyError(ProvisioningError):
    """The network topology file is missing or malformed"""


class UnknownOrganization(ProvisioningError):
    """An organization name that the topology does not define"""


# Transport

class TransportError(ProvisioningError):
    """CA, orderer or peer unreachable, TLS failure or timeout"""


class CAUnreachable(TransportError):
    pass


# Credentials

class RejectedCredential(ProvisioningError):
    """The remote side refused a secret, a registration or a policy check"""


class EnrollmentRejected(RejectedCredential):
    pass


class RegistrationRejected(RejectedCredential):
    pass


class RegistrarMissing(ProvisioningError):
    """A regular identity was requested before the registrar was enrolled"""


# Credential store

class StoreWriteFailed(ProvisioningError):
    pass


class IdentityNotFound(ProvisioningError):
    pass


class StoreReadFailed(ProvisioningError):
    """A stored identity exists but cannot be read back"""


# Channels

class ChannelNotFound(ProvisioningError):
    """The orderer has no genesis block for the channel"""


class ChannelCreationFailed(ProvisioningError):
    pass


class QuorumNotMet(ProvisioningError):
    pass


class SignatureCollectionFailed(ProvisioningError):
    pass


class AlreadyMember(ProvisioningError):
    """The peer already holds the channel ledger. Callers treat this as success."""


class PartialJoinFailure(ProvisioningError):
    """At least one peer failed to join. Carries the report of every peer."""

    def __init__(self, message: str, report, **context):
        super().__init__(message, **context)
        self.report = report
