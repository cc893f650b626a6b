"""Safe cosigner signature collection."""

import logging

import pytest
import requests
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from eth_deploy.safe.signatures import (
    DuplicateSigner,
    SignatureMismatch,
    SignatureSet,
    ThresholdNotMet,
    UnauthorisedSigner,
    recover_signer,
    split_signature,
)
from eth_deploy.signer import LocalKeySigner, RemoteSigner, RemoteSignerError


DIGEST = bytes(Web3.keccak(text="safe tx hash"))

OTHER_DIGEST = bytes(Web3.keccak(text="another safe tx hash"))


@pytest.fixture()
def signers() -> list[LocalKeySigner]:
    """Three cosigners, sorted by address."""
    signers = [LocalKeySigner.create_for_testing(label) for label in ("alice", "bob", "charlie")]
    return sorted(signers, key=lambda s: int(s.address, 16))


def test_sign_and_recover(signers):
    """Recovering our own signature gives our address."""
    for signer in signers:
        assert recover_signer(DIGEST, signer.sign_digest(DIGEST)) == signer.address


def test_test_signers_are_deterministic():
    assert LocalKeySigner.create_for_testing("alice").address == LocalKeySigner.create_for_testing("alice").address
    assert LocalKeySigner.create_for_testing("alice").address != LocalKeySigner.create_for_testing("bob").address


def test_eth_sign_signature(signers):
    """Safe eth_sign signatures have v + 4."""
    signer = signers[0]
    signed = Account.sign_message(encode_defunct(primitive=DIGEST), signer.account.key)
    v, r, s = split_signature(bytes(signed.signature))
    eth_sign_signature = r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([v + 4])
    assert recover_signer(DIGEST, eth_sign_signature) == signer.address

    signatures = SignatureSet(DIGEST)
    signatures.add_signature(signer.address, eth_sign_signature)
    assert signatures.signers == [signer.address]


def test_signature_over_other_digest(signers):
    signer = signers[0]
    signatures = SignatureSet(DIGEST)
    with pytest.raises(SignatureMismatch):
        signatures.add_signature(signer.address, signer.sign_digest(OTHER_DIGEST))
    assert len(signatures) == 0


def test_signature_claimed_by_someone_else(signers):
    signatures = SignatureSet(DIGEST)
    with pytest.raises(SignatureMismatch, match=signers[1].address):
        signatures.add_signature(signers[1].address, signers[0].sign_digest(DIGEST))


def test_unsupported_signature_type(signers):
    signature = bytearray(signers[0].sign_digest(DIGEST))
    signature[64] = 1
    with pytest.raises(SignatureMismatch, match="Unsupported"):
        recover_signer(DIGEST, bytes(signature))


def test_bad_signature_length(signers):
    with pytest.raises(SignatureMismatch, match="65 bytes"):
        recover_signer(DIGEST, signers[0].sign_digest(DIGEST)[0:64])


def test_unrecoverable_signature():
    """Zero r and s do not recover to any signer."""
    for v in (27, 31):
        with pytest.raises(SignatureMismatch, match="Could not recover"):
            recover_signer(DIGEST, b"\x00" * 64 + bytes([v]))


def test_duplicate_signer(signers):
    signatures = SignatureSet(DIGEST)
    signatures.add_signature(signers[0].address, signers[0].sign_digest(DIGEST))
    with pytest.raises(DuplicateSigner):
        signatures.add_signature(signers[0].address, signers[0].sign_digest(DIGEST))
    assert len(signatures) == 1


def test_sorted_by_address(signers):
    """Whatever order we collect, signatures come out in ascending signer order."""
    signatures = SignatureSet(DIGEST)
    signatures.collect(reversed(signers))
    assert signatures.signers == [s.address for s in signers]

    packed = signatures.to_bytes()
    assert len(packed) == 65 * 3
    assert packed == b"".join(s.sign_digest(DIGEST) for s in signers)


def test_threshold(signers):
    signatures = SignatureSet(DIGEST)
    signatures.collect(signers[0:1])
    assert not signatures.meets_threshold(2)
    signatures.collect(signers[1:2])
    assert signatures.meets_threshold(2)


def test_verify_against_chain(signers):
    owners = [s.address for s in signers]
    signatures = SignatureSet(DIGEST)
    signatures.collect(signers[0:2])
    signatures.verify_against_chain(owners, threshold=2)

    with pytest.raises(ThresholdNotMet):
        signatures.verify_against_chain(owners, threshold=3)


def test_removed_owner_refused(signers):
    """Owner removed after signing does not count."""
    signatures = SignatureSet(DIGEST)
    signatures.collect(signers)
    with pytest.raises(UnauthorisedSigner, match=signers[2].address):
        signatures.verify_against_chain([s.address for s in signers[0:2]], threshold=2)


class FakeResponse:
    def __init__(self, data: dict):
        self.data = data

    def raise_for_status(self):
        pass

    def json(self):
        return self.data


class FakeSigningService:
    """Signs with a local key, like a remote HSM would."""

    def __init__(self, signer: LocalKeySigner):
        self.signer = signer
        self.requests = []

    def post(self, url, json, timeout):
        self.requests.append(json)
        digest = bytes.fromhex(json["digest"][2:])
        return FakeResponse({"signature": "0x" + self.signer.sign_digest(digest).hex()})


def test_remote_signer(signers):
    service = FakeSigningService(signers[0])
    remote = RemoteSigner(signers[0].address, "https://signer.example.com/sign", session=service)
    signatures = SignatureSet(DIGEST)
    signatures.collect([remote, signers[1]])
    assert signatures.signers == [signers[0].address, signers[1].address]
    assert service.requests == [{"address": signers[0].address, "digest": "0x" + DIGEST.hex()}]


def test_remote_signer_garbage(signers):
    class BrokenService:
        def post(self, url, json, timeout):
            return FakeResponse({"error": "key not found"})

    remote = RemoteSigner(signers[0].address, "https://signer.example.com/sign", session=BrokenService())
    with pytest.raises(RemoteSignerError):
        remote.sign_digest(DIGEST)


def test_remote_signer_wrong_key(signers):
    """Remote service signing with the wrong key is caught."""
    remote = RemoteSigner(signers[0].address, "https://signer.example.com/sign", session=FakeSigningService(signers[1]))
    signatures = SignatureSet(DIGEST)
    with pytest.raises(SignatureMismatch):
        signatures.collect([remote])


def test_remote_signer_does_not_leak_url(signers, caplog):
    """Signing service URL may carry an API key, keep it out of logs and errors."""
    caplog.set_level(logging.INFO)
    url = "https://signer.example.com/sign?api_key=secret123"

    remote = RemoteSigner(signers[0].address, url, session=FakeSigningService(signers[0]))
    remote.sign_digest(DIGEST)
    assert signers[0].address in caplog.text
    assert "secret123" not in caplog.text

    class DownService:
        def post(self, url, json, timeout):
            raise requests.ConnectionError(f"Max retries exceeded with url: {url}")

    remote = RemoteSigner(signers[0].address, url, session=DownService())
    with pytest.raises(RemoteSignerError) as exc_info:
        remote.sign_digest(DIGEST)
    assert "secret123" not in str(exc_info.value)
    assert "secret123" not in repr(remote)
