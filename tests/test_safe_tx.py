"""Safe transaction hashing."""

import pytest
from eth_account import Account
from safe_eth.safe.safe_tx import SafeTx
from web3 import Web3

from eth_deploy.abi import MalformedCallData, encode_with_signature
from eth_deploy.eip_712 import encode_type
from eth_deploy.safe.tx import (
    SAFE_TX_ENCODED_LENGTH,
    SAFE_TX_TYPES,
    SafeAuthorizationRequest,
    SafeOperation,
    build_safe_typed_data,
    encode_safe_tx,
    hash_safe_tx,
)
from eth_deploy.signer import LocalKeySigner


SAFE = Web3.to_checksum_address("0x8e1d5f3bed4a5aca97c0a2dcd4c2a4d0a65c9a77")

OTHER_SAFE = Web3.to_checksum_address("0x5a6e5d2faa3a0c6d2ab9e0ca3f3fe5ff0e3b7b4c")

FACTORY = Web3.to_checksum_address("0x9fbb3df7c40da2e5a0de984ffe2ccb7c47cd0abf")


@pytest.fixture()
def request_() -> SafeAuthorizationRequest:
    data = encode_with_signature("deploy(bytes32,bytes)", [b"\x01" * 32, bytes.fromhex("6080604052")])
    return SafeAuthorizationRequest(to=FACTORY, data=data, nonce=7)


def test_safe_tx_type_hash():
    """Type hash matches SAFE_TX_TYPEHASH in Safe.sol."""
    assert encode_type("SafeTx", SAFE_TX_TYPES) == "SafeTx(address to,uint256 value,bytes data,uint8 operation,uint256 safeTxGas,uint256 baseGas,uint256 gasPrice,address gasToken,address refundReceiver,uint256 nonce)"
    assert Web3.keccak(text=encode_type("SafeTx", SAFE_TX_TYPES)).hex() == "bb8310d486368db6bd6f849402fdd73ad53d316b5a4b2644ad6efe0f941286d8"
    assert Web3.keccak(text=encode_type("EIP712Domain", SAFE_TX_TYPES)).hex() == "47e79534a245952e8b16893a336b85a3d9ea9fa8c573f3d803afb92a79469218"


def test_encode_safe_tx_layout(request_):
    """Fixed size layout, data replaced by its hash."""
    encoded = encode_safe_tx(request_)
    assert len(encoded) == SAFE_TX_ENCODED_LENGTH
    assert encoded[0:32].hex() == "bb8310d486368db6bd6f849402fdd73ad53d316b5a4b2644ad6efe0f941286d8"
    assert encoded[32:64] == b"\x00" * 12 + bytes.fromhex(FACTORY[2:])
    assert encoded[96:128] == bytes(Web3.keccak(request_.data))
    assert int.from_bytes(encoded[-32:], "big") == 7
    # Stable across calls
    assert encode_safe_tx(request_) == encoded


def test_hash_matches_eth_account(request_):
    """Our hash is the same eth_account computes for eth_signTypedData_v4."""
    typed_data = build_safe_typed_data(request_, 1, SAFE)
    signer = LocalKeySigner.create_for_testing("alice")
    signed = Account.sign_typed_data(signer.account.key, full_message=typed_data)
    assert hash_safe_tx(request_, 1, SAFE) == signed.message_hash


def test_hash_domain_separation(request_):
    """Same request on another chain or Safe gives another hash."""
    digest = hash_safe_tx(request_, 1, SAFE)
    assert hash_safe_tx(request_, 1, SAFE) == digest
    assert hash_safe_tx(request_, 5, SAFE) != digest
    assert hash_safe_tx(request_, 1, OTHER_SAFE) != digest


def test_hash_depends_on_nonce(request_):
    other = SafeAuthorizationRequest(to=request_.to, data=request_.data, nonce=8)
    assert hash_safe_tx(other, 1, SAFE) != hash_safe_tx(request_, 1, SAFE)


def test_request_normalised():
    """Lower case addresses give the same request."""
    a = SafeAuthorizationRequest(to=FACTORY.lower(), operation=0)
    b = SafeAuthorizationRequest(to=FACTORY, operation=SafeOperation.call)
    assert a == b
    assert a.to == FACTORY


def test_malformed_data_refused():
    request = SafeAuthorizationRequest(to=FACTORY, data=b"\xde\xad\xbe\xef" + b"\x00" * 32)
    with pytest.raises(MalformedCallData):
        hash_safe_tx(request, 1, SAFE)


def test_expected_signature_enforced(request_):
    with pytest.raises(MalformedCallData):
        hash_safe_tx(request_, 1, SAFE, expected_signature="cancel(bytes32)")


def test_hash_matches_safe_eth(request_):
    """Our hash is the same safe-eth-py computes for a v1.3.0 Safe."""
    safe_tx = SafeTx(
        None,
        SAFE,
        request_.to,
        request_.value,
        request_.data,
        request_.operation,
        request_.safe_tx_gas,
        request_.base_gas,
        request_.gas_price,
        request_.gas_token,
        request_.refund_receiver,
        safe_nonce=request_.nonce,
        safe_version="1.3.0",
        chain_id=1,
    )
    assert hash_safe_tx(request_, 1, SAFE) == bytes(safe_tx.safe_tx_hash)
