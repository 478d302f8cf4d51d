import asyncio
from enum import Enum
from typing import Dict, Optional

from config import log
from provisioning.ca import CAClient
from provisioning.errors import (ProvisioningError, RegistrarMissing,
                                 StoreWriteFailed, TopologyError)
from provisioning.network import Organization, RegistrarCredential
from provisioning.wallet import CredentialStore, Identity, Role, read_msp_dir


class EnrollMode(Enum):
    """How organization admins are obtained"""
    # Register and enroll against the organization's CA
    ENROLL = "enroll"
    # Import the credentials generated by cryptogen
    LOAD = "load"


class IdentityProvisioner:
    """Brings the identities of one organization to "enrolled and persisted".

    Identities already present in the store are returned as they are: an
    expiring certificate is not re-enrolled.
    """

    def __init__(self, org: Organization, ca_client: CAClient, store: CredentialStore):
        self.org = org
        self.ca_client = ca_client
        self.store = store
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, label):
        lock = self._locks.get(label)
        if lock is None:
            lock = self._locks[label] = asyncio.Lock()
        return lock

    async def ensure_registrar(self, registrar: Optional[RegistrarCredential] = None) -> Identity:
        """Enroll the registrar with its bootstrap secret, unless the store already holds it"""
        registrar = registrar or self.org.ca.registrar
        return await self.ensure_enrolled(registrar.enroll_id, Role.ADMIN, registrar=registrar)

    async def ensure_enrolled(
        self,
            label: str,
            role: Role = Role.CLIENT,
            registrar: Optional[RegistrarCredential] = None,
    ) -> Identity:
        """ Return the identity stored under label, enrolling it first if needed.

        :param label: registrar name or user id
        :param role: role given to a newly registered identity
        :param registrar: bootstrap credential of the CA registrar. Defaults to the organization's
        :raises RegistrarMissing: label is a regular identity and the registrar is not in the store
        :raises TransportError: the CA could not be reached
        :raises RejectedCredential: the CA refused the secret or the registration
        :raises StoreWriteFailed: the credentials could not be persisted
        """
        if not label:
            raise ValueError("label must not be empty")
        if not isinstance(role, Role):
            raise ValueError(f"Invalid role: {role}")
        registrar = registrar or self.org.ca.registrar

        async with self._lock_for(label):
            if await self.store.exists(label):
                log.info(f"An identity for the user \"{label}\" of org {self.org.key} already exists in the wallet")
                return await self.store.get(label)

            try:
                if label == registrar.enroll_id:
                    identity = await self._enroll_registrar(registrar)
                else:
                    identity = await self._register_and_enroll(label, role, registrar)
                await self._persist(identity)
            except ProvisioningError as e:
                raise e.add_context(org=self.org.key, label=label)
            return identity

    async def _enroll_registrar(self, registrar: RegistrarCredential) -> Identity:
        # Registrars are created when the CA is bootstrapped, so there is nothing to register
        enrollment = await self.ca_client.enroll(registrar.enroll_id, registrar.enroll_secret)
        log.info(f"Successfully enrolled admin user \"{registrar.enroll_id}\" of org {self.org.key}")
        return Identity(
            label=registrar.enroll_id,
            role=Role.ADMIN,
            certificate=enrollment.certificate,
            private_key=enrollment.private_key,
            msp_id=self.org.msp_id,
        )

    async def _register_and_enroll(self, label: str, role: Role, registrar: RegistrarCredential) -> Identity:
        if not await self.store.exists(registrar.enroll_id):
            raise RegistrarMissing(
                f"An identity for the registrar \"{registrar.enroll_id}\" does not exist in the wallet; "
                f"enroll the registrar before registering \"{label}\"")
        registrar_identity = await self.store.get(registrar.enroll_id)

        secret = await self.ca_client.register(label, role, self.org.ca.affiliation, registrar_identity)
        enrollment = await self.ca_client.enroll(label, secret)
        log.info(f"Successfully registered and enrolled user \"{label}\" with role {role.value} of org {self.org.key}")
        return Identity(
            label=label,
            role=role,
            certificate=enrollment.certificate,
            private_key=enrollment.private_key,
            msp_id=self.org.msp_id,
        )

    async def _persist(self, identity: Identity):
        try:
            await self.store.put(identity.label, identity)
        except OSError as e:
            raise StoreWriteFailed(f"Cannot store identity \"{identity.label}\": {e}") from e

    async def load_from_msp(self, label: str, msp_dir: str, role: Role = Role.ADMIN) -> Identity:
        """Import credentials generated by cryptogen into the store, unless the label is already taken"""
        async with self._lock_for(label):
            if await self.store.exists(label):
                log.info(f"An identity for the user \"{label}\" of org {self.org.key} already exists in the wallet")
                return await self.store.get(label)
            try:
                certificate, private_key = read_msp_dir(msp_dir)
                identity = Identity(
                    label=label,
                    role=role,
                    certificate=certificate,
                    private_key=private_key,
                    msp_id=self.org.msp_id,
                )
                await self._persist(identity)
            except ProvisioningError as e:
                raise e.add_context(org=self.org.key, label=label)
            log.info(f"Successfully loaded user \"{label}\" of org {self.org.key} and imported it into the wallet")
            return identity

    async def admin_identity(self, mode: EnrollMode) -> Identity:
        """Return the admin identity used to sign on behalf of the organization"""
        if mode is EnrollMode.LOAD:
            if self.org.admin_msp_dir is None:
                raise TopologyError(f"Organization {self.org.key} has no admin_msp folder to load from")
            return await self.load_from_msp(self.org.admin_label, self.org.admin_msp_dir, Role.ADMIN)
        await self.ensure_registrar()
        return await self.ensure_enrolled(self.org.admin_label, Role.ADMIN)
