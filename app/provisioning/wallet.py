import asyncio
import glob
import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Tuple

from config import log
from provisioning.errors import (IdentityNotFound, StoreReadFailed,
                                 StoreWriteFailed)


class Role(Enum):
    ADMIN = "admin"
    CLIENT = "client"


@dataclass(frozen=True)
class Identity:
    """A signing identity bound to one organization"""
    label: str
    role: Role
    certificate: str
    private_key: str = field(repr=False)
    msp_id: str = ""


class CredentialStore:
    """Keyed store of the identities of one organization.

    A store holds at most one identity per label.
    """

    async def exists(self, label: str) -> bool:
        raise NotImplementedError

    async def get(self, label: str) -> Identity:
        raise NotImplementedError

    async def put(self, label: str, identity: Identity) -> None:
        raise NotImplementedError


class InMemoryWallet(CredentialStore):
    def __init__(self):
        self._identities: Dict[str, Identity] = {}
        self._lock = threading.Lock()

    async def exists(self, label):
        with self._lock:
            return label in self._identities

    async def get(self, label):
        with self._lock:
            try:
                return self._identities[label]
            except KeyError:
                raise IdentityNotFound(f"No identity \"{label}\" in wallet", label=label) from None

    async def put(self, label, identity):
        with self._lock:
            self._identities[label] = identity

    def labels(self):
        with self._lock:
            return sorted(self._identities)


class FileSystemWallet(CredentialStore):
    """Wallet storing one <label>.id JSON file per identity, in the layout of the Fabric 2.x SDKs"""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _id_file(self, label):
        return os.path.join(self.path, f"{label}.id")

    async def exists(self, label):
        return await asyncio.to_thread(os.path.exists, self._id_file(label))

    async def get(self, label):
        return await asyncio.to_thread(self._read, label)

    async def put(self, label, identity):
        await asyncio.to_thread(self._write, label, identity)
        log.info(f"Stored identity {label} ({identity.msp_id}) in wallet {self.path}")

    def _read(self, label):
        try:
            with open(self._id_file(label), "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise IdentityNotFound(f"No identity \"{label}\" in wallet {self.path}", label=label) from None
        except (OSError, ValueError) as e:
            raise StoreReadFailed(f"Cannot read identity \"{label}\" from {self.path}: {e}", label=label) from e
        try:
            return Identity(
                label=label,
                role=Role(data.get("role", Role.CLIENT.value)),
                certificate=data["credentials"]["certificate"],
                private_key=data["credentials"]["privateKey"],
                msp_id=data["mspId"],
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StoreReadFailed(f"Identity \"{label}\" in {self.path} is malformed: {e!r}", label=label) from e

    def _write(self, label, identity):
        data = {
            "credentials": {
                "certificate": identity.certificate,
                "privateKey": identity.private_key,
            },
            "mspId": identity.msp_id,
            "type": "X.509",
            "version": 1,
            "role": identity.role.value,
        }
        with self._lock:
            tmp_path = None
            try:
                os.makedirs(self.path, exist_ok=True)
                # Certificate and key land together or not at all
                fd, tmp_path = tempfile.mkstemp(dir=self.path, prefix=f".{label}.", suffix=".tmp")
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f)
                os.replace(tmp_path, self._id_file(label))
            except OSError as e:
                if tmp_path is not None and os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise StoreWriteFailed(f"Cannot write identity \"{label}\" to {self.path}: {e}", label=label) from e


def _read_all_files(directory: str):
    """ Return the contents of the files in a directory, sorted by name """
    contents = []
    for path in sorted(glob.glob(os.path.join(directory, "*"))):
        if os.path.isfile(path):
            with open(path, "r") as f:
                contents.append(f.read())
    return contents


def read_msp_dir(msp_dir: str) -> Tuple[str, str]:
    """ Read the signing certificate and private key of an MSP folder generated by cryptogen or fabric-ca-client.

    :returns: tuple (certificate PEM, private key PEM)
    """
    certs = _read_all_files(os.path.join(msp_dir, "signcerts"))
    keys = _read_all_files(os.path.join(msp_dir, "keystore"))
    if not certs or not keys:
        raise IdentityNotFound(f"MSP folder {msp_dir} has no signing certificate or no private key")
    return certs[0], keys[0]


def write_msp_dir(identity: Identity, msp_dir: str, ca_certs: Iterable[bytes]) -> str:
    """ Lay out an identity as an MSP folder usable by the peer and fabric-ca-client binaries.

    :param identity: the identity to export
    :param msp_dir: destination folder, created if missing
    :param ca_certs: root certificates of the identity's organization
    :returns: the MSP folder path
    """
    for sub in ("signcerts", "keystore", "cacerts"):
        os.makedirs(os.path.join(msp_dir, sub), exist_ok=True)
    with open(os.path.join(msp_dir, "signcerts", "cert.pem"), "w") as f:
        f.write(identity.certificate)
    key_path = os.path.join(msp_dir, "keystore", "key.pem")
    with open(key_path, "w") as f:
        f.write(identity.private_key)
    os.chmod(key_path, 0o600)
    for i, cert in enumerate(ca_certs):
        with open(os.path.join(msp_dir, "cacerts", f"cacert-{i}.pem"), "wb") as f:
            f.write(cert)
    return msp_dir
