"""Safe cosigner signature collection.

- Collect cosigner signatures over a Safe transaction hash

- Validate each signature by recovering its signer

- Keep signatures sorted in the ascending signer address order ``Safe.checkNSignatures()`` requires

- Check the threshold and the current owner list before we spend gas on ``execTransaction()``

Example:

.. code-block:: python

    digest = hash_safe_tx(request, chain_id, safe_address)
    signatures = SignatureSet(digest)
    signatures.collect(signers)
    signatures.verify_against_chain(owners, threshold)
    packed = signatures.to_bytes()
"""

import bisect
import logging
from dataclasses import dataclass
from typing import Iterable

from eth_typing import HexAddress
from eth_utils import ValidationError
from hexbytes import HexBytes
from safe_eth.eth.constants import NULL_ADDRESS
from safe_eth.safe.safe_signature import SafeSignature as ParsedSafeSignature
from safe_eth.safe.signatures import signatures_to_bytes
from web3 import Web3

from eth_deploy.signer import DigestSigner


logger = logging.getLogger(__name__)


#: ECDSA and eth_sign signature types
EOA_SIGNATURE_V = (27, 28, 31, 32)


class SignatureError(Exception):
    """Base class for all signature set problems."""


class SignatureMismatch(SignatureError):
    """Recovered signer is not the claimed signer."""


class DuplicateSigner(SignatureError):
    """Signer has already signed."""


class UnauthorisedSigner(SignatureError):
    """Signer is not a Safe owner (anymore)."""


class ThresholdNotMet(SignatureError):
    """Not enough signatures."""


def split_signature(signature: bytes) -> tuple[int, int, int]:
    """Split 65 bytes signature to (v, r, s)."""
    signature = bytes(signature)
    if len(signature) != 65:
        raise SignatureMismatch(f"Signature must be 65 bytes, got {len(signature)} bytes: 0x{signature.hex()}")
    r = int.from_bytes(signature[0:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    return v, r, s


def recover_signer(digest: bytes, signature: bytes) -> HexAddress:
    """Recover the signer address of a Safe signature.

    Supports the two EOA signature types of Safe:

    - ``v`` 27 or 28: ECDSA signature of the raw digest

    - ``v`` 31 or 32: ``eth_sign`` signature, the digest was signed with the Ethereum signed message prefix

    Parsing and recovery is done by safe-eth-py, the same way the Safe transaction service does it.

    :raise SignatureMismatch:
        Signature cannot be recovered
    """
    v, r, s = split_signature(signature)
    if v not in EOA_SIGNATURE_V:
        raise SignatureMismatch(f"Unsupported signature type v={v}, only EOA signatures are supported")

    try:
        (parsed,) = ParsedSafeSignature.parse_signature(bytes(signature), bytes(digest))
        owner = parsed.owner
    except (ValidationError, ValueError) as e:
        raise SignatureMismatch(f"Could not recover signer from signature 0x{bytes(signature).hex()}: {e}") from e

    if owner == NULL_ADDRESS:
        raise SignatureMismatch(f"Could not recover signer from signature 0x{bytes(signature).hex()}")

    return Web3.to_checksum_address(owner)


@dataclass(frozen=True, slots=True)
class SafeSignature:
    """A single cosigner signature."""

    #: Checksummed signer address
    signer: HexAddress

    #: 65 bytes r, s, v
    signature: bytes

    @property
    def sort_key(self) -> int:
        return int(self.signer, 16)

    def __repr__(self):
        return f"<SafeSignature {self.signer}>"


class SignatureSet:
    """Signatures of different cosigners over the same Safe transaction hash.

    - Signatures are always sorted by signer address

    - A signer can sign only once

    .. note ::

        Signer counts are small (tens at most), so we do a sorted insert instead of
        anything more clever.
    """

    def __init__(self, digest: bytes):
        assert len(digest) == 32, f"Digest must be 32 bytes, got {len(digest)}"
        self.digest = HexBytes(digest)
        self.signatures: list[SafeSignature] = []

    def __repr__(self):
        return f"<SignatureSet 0x{self.digest.hex()} signers:{self.signers}>"

    def __len__(self) -> int:
        return len(self.signatures)

    def __iter__(self):
        return iter(self.signatures)

    @property
    def signers(self) -> list[HexAddress]:
        """Signer addresses in the canonical order."""
        return [s.signer for s in self.signatures]

    def add_signature(self, signer: HexAddress | str, signature: bytes) -> SafeSignature:
        """Validate and add a cosigner signature.

        :param signer:
            Who claims to have signed

        :param signature:
            65 bytes signature

        :raise SignatureMismatch:
            The signature was not made by ``signer`` for this digest

        :raise DuplicateSigner:
            ``signer`` has already signed
        """
        signer = Web3.to_checksum_address(signer)
        recovered = recover_signer(self.digest, signature)
        if recovered != signer:
            raise SignatureMismatch(f"Signature claimed by {signer} was signed by {recovered} for digest 0x{self.digest.hex()}")

        entry = SafeSignature(signer=signer, signature=bytes(signature))
        keys = [s.sort_key for s in self.signatures]
        idx = bisect.bisect_left(keys, entry.sort_key)
        if idx < len(keys) and keys[idx] == entry.sort_key:
            raise DuplicateSigner(f"Signer {signer} has already signed digest 0x{self.digest.hex()}")

        self.signatures.insert(idx, entry)
        logger.info("Added signature of %s, now %d signatures", signer, len(self.signatures))
        return entry

    def collect(self, signers: Iterable[DigestSigner]):
        """Ask each signer to sign the digest and add the result."""
        for signer in signers:
            assert isinstance(signer, DigestSigner), f"Not a signer: {signer}"
            self.add_signature(signer.address, signer.sign_digest(bytes(self.digest)))

    def meets_threshold(self, threshold: int) -> bool:
        """Do we have at least ``threshold`` signatures."""
        assert threshold >= 1, f"Bad threshold: {threshold}"
        return len(self.signatures) >= threshold

    def verify_against_chain(
        self,
        authorised_signers: Iterable[HexAddress | str],
        threshold: int | None = None,
    ):
        """Check that all signers are current Safe owners.

        Safe owners may have changed after the signatures were collected.
        A signature from a removed owner is an error, we never drop it silently.

        :param authorised_signers:
            Current owner list, as returned by ``Safe.getOwners()``

        :param threshold:
            If given, also check the signature count

        :raise UnauthorisedSigner:
            A signer is not an owner

        :raise ThresholdNotMet:
            Too few signatures
        """
        owners = {Web3.to_checksum_address(a) for a in authorised_signers}
        for s in self.signatures:
            if s.signer not in owners:
                raise UnauthorisedSigner(f"Signer {s.signer} is not an authorised Safe owner, owners are {sorted(owners)}")

        if threshold is not None and not self.meets_threshold(threshold):
            raise ThresholdNotMet(f"Safe threshold is {threshold}, but we have only {len(self.signatures)} signatures from {self.signers}")

    def to_bytes(self) -> bytes:
        """Pack signatures for ``Safe.execTransaction(..., bytes signatures)``."""
        return signatures_to_bytes([split_signature(s.signature) for s in self.signatures])
