"""Safe transaction proposal files."""

import json

import pytest
from web3 import Web3

from eth_deploy.abi import encode_with_signature
from eth_deploy.safe.proposal import (
    PROPOSAL_VERSION,
    ProposalConflictError,
    ProposalFormatError,
    SafeTransactionProposal,
    get_proposal_path,
    read_proposal,
)
from eth_deploy.safe.tx import SafeAuthorizationRequest, hash_safe_tx


SAFE = Web3.to_checksum_address("0x8e1d5f3bed4a5aca97c0a2dcd4c2a4d0a65c9a77")

FACTORY = Web3.to_checksum_address("0x9fbb3df7c40da2e5a0de984ffe2ccb7c47cd0abf")


@pytest.fixture()
def safe_request() -> SafeAuthorizationRequest:
    data = encode_with_signature("deploy(bytes32,bytes)", [b"\x01" * 32, bytes.fromhex("6080604052")])
    return SafeAuthorizationRequest(to=FACTORY, data=data, nonce=3)


def test_write_and_read(tmp_path, safe_request):
    proposal = SafeTransactionProposal.create(safe_request, 11155111, SAFE, description="Deploy move")
    path = proposal.write(get_proposal_path(tmp_path, 11155111, SAFE, 3))
    assert path.name == f"safe-tx-11155111-{SAFE}-3.json"

    data = json.loads(path.read_text())
    assert data["version"] == PROPOSAL_VERSION
    assert data["chain_id"] == 11155111
    assert data["safe_address"] == SAFE
    assert data["to"] == FACTORY
    assert data["value"] == "0"
    assert data["nonce"] == "3"
    assert data["operation"] == 0
    assert data["data"] == "0x" + safe_request.data.hex()
    assert data["safe_tx_hash"] == "0x" + hash_safe_tx(safe_request, 11155111, SAFE).hex()
    assert data["description"] == "Deploy move"

    read_back = read_proposal(path)
    assert read_back == proposal
    assert read_back.get_request() == safe_request


def test_flat_format(tmp_path, safe_request):
    """No nested objects, any tool can read it."""
    path = SafeTransactionProposal.create(safe_request, 1, SAFE).write(tmp_path / "proposal.json")
    data = json.loads(path.read_text())
    assert all(not isinstance(v, (dict, list)) for v in data.values())


def test_tampered_file(tmp_path, safe_request):
    """Edited payload does not match the stored hash."""
    path = SafeTransactionProposal.create(safe_request, 1, SAFE).write(tmp_path / "proposal.json")
    data = json.loads(path.read_text())
    data["nonce"] = "4"
    path.write_text(json.dumps(data))
    with pytest.raises(ProposalFormatError, match="does not match"):
        read_proposal(path)


def test_unknown_version(tmp_path, safe_request):
    path = SafeTransactionProposal.create(safe_request, 1, SAFE).write(tmp_path / "proposal.json")
    data = json.loads(path.read_text())
    data["version"] = 2
    path.write_text(json.dumps(data))
    with pytest.raises(ProposalFormatError, match="version"):
        read_proposal(path)


def test_missing_field(tmp_path, safe_request):
    path = SafeTransactionProposal.create(safe_request, 1, SAFE).write(tmp_path / "proposal.json")
    data = json.loads(path.read_text())
    del data["gas_token"]
    path.write_text(json.dumps(data))
    with pytest.raises(ProposalFormatError):
        read_proposal(path)


def test_same_nonce_other_transaction_refused(tmp_path, safe_request):
    """A pending proposal is never replaced by another transaction for the same nonce."""
    path = get_proposal_path(tmp_path, 1, SAFE, safe_request.nonce)
    first = SafeTransactionProposal.create(safe_request, 1, SAFE, description="Deploy move")
    first.write(path)

    # Writing the same transaction again is fine
    first.write(path)

    other_request = SafeAuthorizationRequest(to=FACTORY, data=encode_with_signature("deploy(bytes32,bytes)", [b"\x02" * 32, bytes.fromhex("6080604052")]), nonce=safe_request.nonce)
    other = SafeTransactionProposal.create(other_request, 1, SAFE, description="Deploy bridge")
    with pytest.raises(ProposalConflictError, match=first.safe_tx_hash):
        other.write(path)

    assert read_proposal(path) == first
