import glob
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Sequence
from urllib.parse import quote, urlsplit, urlunsplit

from config import BASE_DIR, FABRIC_CA_CLIENT, log
from provisioning.errors import (CAUnreachable, EnrollmentRejected,
                                 RegistrationRejected)
from provisioning.network import CertAuthorityConfig
from provisioning.runner import CommandRunner, LocalRunner, looks_unreachable
from provisioning.wallet import Identity, Role, write_msp_dir

_SECRET_RE = re.compile(r"Password:\s*(\S+)")


@dataclass(frozen=True)
class Enrollment:
    certificate: str
    private_key: str = field(repr=False)


class CAClient:
    """Register and enroll identities against one certificate authority"""

    async def register(self, enrollment_id: str, role: Role, affiliation: str, registrar: Identity) -> str:
        """Create an identity record at the CA and return its one-time enrollment secret"""
        raise NotImplementedError

    async def enroll(self, enrollment_id: str, secret: str) -> Enrollment:
        raise NotImplementedError


def _url_with_credentials(url: str, enrollment_id: str, secret: str) -> str:
    parts = urlsplit(url)
    netloc = f"{quote(enrollment_id, safe='')}:{quote(secret, safe='')}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class FabricCaClient(CAClient):
    def __init__(
        self,
            ca: CertAuthorityConfig,
            ca_certs: Sequence[bytes] = (),
            runner: CommandRunner = None,
            work_dir: str = BASE_DIR,
            ca_client_bin: str = FABRIC_CA_CLIENT,
    ):
        """ Client of a Fabric CA built on the fabric-ca-client binary.

        :param ca: the CA endpoint, name and TLS trust root
        :param ca_certs: root certificates of the organization MSP, used to lay out the registrar's MSP folder
        :param runner: how to run the binary (host or tools container)
        :param work_dir: scratch directory for the client home folders
        """
        self.ca = ca
        self.ca_certs = tuple(ca_certs) or (ca.tls_trust_root,)
        self.runner = runner if runner is not None else LocalRunner()
        self.work_dir = work_dir
        self.ca_client_bin = ca_client_bin

    def _new_home(self, prefix):
        os.makedirs(self.work_dir, exist_ok=True)
        home = tempfile.mkdtemp(dir=self.work_dir, prefix=prefix)
        tls_cert_path = os.path.join(home, "tls-ca-cert.pem")
        with open(tls_cert_path, "wb") as f:
            f.write(self.ca.tls_trust_root)
        return home, tls_cert_path

    def _raise_for_result(self, result, action, enrollment_id, rejected_cls):
        if looks_unreachable(result.output):
            raise CAUnreachable(
                f"CA {self.ca.name} at {self.ca.url} unreachable while trying to {action} {enrollment_id}: {result.output}",
                ca=self.ca.name)
        raise rejected_cls(
            f"CA {self.ca.name} refused to {action} {enrollment_id}: {result.output}",
            ca=self.ca.name)

    async def enroll(self, enrollment_id, secret):
        home, tls_cert_path = self._new_home(f"enroll-{enrollment_id}-")
        msp_dir = os.path.join(home, "msp")
        try:
            # The URL carries the secret, so it goes through the environment rather than the command line
            env = {"FABRIC_CA_CLIENT_URL": _url_with_credentials(self.ca.url, enrollment_id, secret)}
            result = await self.runner.run([
                self.ca_client_bin, "enroll",
                "--caname", self.ca.name,
                "--tls.certfiles", tls_cert_path,
                "--home", home,
                "--mspdir", msp_dir,
            ], env=env, sensitive=True)
            if not result.ok:
                self._raise_for_result(result, "enroll", enrollment_id, EnrollmentRejected)

            cert_path = os.path.join(msp_dir, "signcerts", "cert.pem")
            key_paths = sorted(glob.glob(os.path.join(msp_dir, "keystore", "*")))
            if not os.path.exists(cert_path) or not key_paths:
                raise EnrollmentRejected(
                    f"Enrollment of {enrollment_id} at CA {self.ca.name} returned no certificate or no key",
                    ca=self.ca.name)
            with open(cert_path, "r") as f:
                certificate = f.read()
            with open(key_paths[0], "r") as f:
                private_key = f.read()
        finally:
            # The private key must not outlive the enrollment on disk
            shutil.rmtree(home, ignore_errors=True)

        log.info(f"Successfully enrolled user '{enrollment_id}' at CA {self.ca.name}")
        return Enrollment(certificate=certificate, private_key=private_key)

    async def register(self, enrollment_id, role, affiliation, registrar):
        home, tls_cert_path = self._new_home(f"register-{enrollment_id}-")
        try:
            msp_dir = write_msp_dir(registrar, os.path.join(home, "msp"), self.ca_certs)
            result = await self.runner.run([
                self.ca_client_bin, "register",
                "--id.name", enrollment_id,
                "--id.type", role.value,
                "--id.affiliation", affiliation,
                "-u", self.ca.url,
                "--caname", self.ca.name,
                "--tls.certfiles", tls_cert_path,
                "--home", home,
                "--mspdir", msp_dir,
            ], sensitive=True)
        finally:
            shutil.rmtree(home, ignore_errors=True)

        if not result.ok:
            self._raise_for_result(result, "register", enrollment_id, RegistrationRejected)
        match = _SECRET_RE.search(result.output)
        if match is None:
            raise RegistrationRejected(
                f"CA {self.ca.name} registered {enrollment_id} but returned no enrollment secret",
                ca=self.ca.name)
        log.info(f"Successfully registered user '{enrollment_id}' with role {role.value} at CA {self.ca.name}")
        return match.group(1)
