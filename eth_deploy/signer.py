"""Digest signers.

Cosigners of a Safe transaction sign a 32 byte digest.
Where the private key lives varies:

- :py:class:`LocalKeySigner` holds a plain text private key in the process memory

- :py:class:`RemoteSigner` asks a signing service over HTTP, the key never enters this process

Signers never log the key material.
"""

import logging
from abc import ABC, abstractmethod

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3


logger = logging.getLogger(__name__)


class RemoteSignerError(Exception):
    """Signing service failed or gave us garbage."""


class DigestSigner(ABC):
    """Abstract base class for anything that can sign a Safe transaction hash."""

    @property
    @abstractmethod
    def address(self) -> HexAddress:
        """Ethereum address of the signer."""

    @abstractmethod
    def sign_digest(self, digest: bytes) -> bytes:
        """Sign a 32 byte digest.

        :return:
            65 bytes signature ``r || s || v`` where v is 27 or 28.
        """

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.address}>"


class LocalKeySigner(DigestSigner):
    """Sign with a private key held in the process memory."""

    def __init__(self, account: LocalAccount):
        assert isinstance(account, LocalAccount), f"Got {type(account)}"
        self.account = account

    @property
    def address(self) -> HexAddress:
        return self.account.address

    def sign_digest(self, digest: bytes) -> bytes:
        assert len(digest) == 32, f"Digest must be 32 bytes, got {len(digest)}"
        signed = self.account.unsafe_sign_hash(digest)
        return bytes(signed.signature)

    @staticmethod
    def from_private_key(key: str) -> "LocalKeySigner":
        """Create a signer from a hex private key.

        :param key:
            0x prefixed hex string
        """
        assert key.startswith("0x"), "Private key must be 0x prefixed"
        return LocalKeySigner(Account.from_key(key))

    @staticmethod
    def create_for_testing(label: str) -> "LocalKeySigner":
        """Deterministic test fixture signer.

        The private key is derived from ``label``, so tests get stable addresses.

        .. warning ::

            Never use with real funds.
        """
        key = Web3.keccak(text=f"eth-deploy test signer {label}")
        return LocalKeySigner(Account.from_key(key))


class RemoteSigner(DigestSigner):
    """Sign using a remote signing service.

    The service receives a JSON POST:

    .. code-block:: json

        {"address": "0x...", "digest": "0x..."}

    and answers with:

    .. code-block:: json

        {"signature": "0x..."}

    The answer is not trusted. :py:class:`eth_deploy.safe.signatures.SignatureSet`
    recovers the signer from every signature before accepting it.
    """

    def __init__(
        self,
        address: HexAddress | str,
        endpoint_url: str,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ):
        self._address = Web3.to_checksum_address(address)
        self.endpoint_url = endpoint_url
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def address(self) -> HexAddress:
        return self._address

    def sign_digest(self, digest: bytes) -> bytes:
        assert len(digest) == 32, f"Digest must be 32 bytes, got {len(digest)}"
        payload = {"address": self.address, "digest": "0x" + bytes(digest).hex()}
        logger.info("Requesting signature for %s from remote signer %s", payload["digest"], self.address)
        try:
            resp = self.session.post(self.endpoint_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise RemoteSignerError(f"Signing service failed for signer {self.address}: {e.__class__.__name__}") from e

        try:
            signature = HexBytes(data["signature"])
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteSignerError(f"Signing service returned no signature for signer {self.address}: {data}") from e

        if len(signature) != 65:
            raise RemoteSignerError(f"Signing service returned {len(signature)} bytes signature for signer {self.address}, expected 65")

        return bytes(signature)
