"""Safe multisignature transaction encoding.

- A Safe transaction is a request for the Safe to make a call. Cosigners sign
  its EIP-712 hash and anyone can then submit the signatures with ``Safe.execTransaction()``

- Hashing follows Safe v1.3.0+ contracts, where the EIP-712 domain
  is ``(chainId, verifyingContract)``. A signature collected for one
  Safe or chain cannot be replayed on another.

Safe source code:

- https://github.com/safe-global/safe-smart-account/blob/main/contracts/Safe.sol
"""

import enum
import logging
from dataclasses import dataclass, field

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ZERO_ADDRESS, validate_call_data
from eth_deploy.eip_712 import TypeDefinitions, eip712_encode_hash, encode_data


logger = logging.getLogger(__name__)


#: EIP-712 types of the Safe transaction.
#:
#: Field order must match ``SAFE_TX_TYPEHASH`` in Safe.sol.
SAFE_TX_TYPES: TypeDefinitions = {
    "EIP712Domain": [
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "SafeTx": [
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "data", "type": "bytes"},
        {"name": "operation", "type": "uint8"},
        {"name": "safeTxGas", "type": "uint256"},
        {"name": "baseGas", "type": "uint256"},
        {"name": "gasPrice", "type": "uint256"},
        {"name": "gasToken", "type": "address"},
        {"name": "refundReceiver", "type": "address"},
        {"name": "nonce", "type": "uint256"},
    ],
}

#: Size of encoded SafeTx struct: type hash + 10 fields
SAFE_TX_ENCODED_LENGTH = 11 * 32


class SafeOperation(enum.IntEnum):
    """How the Safe performs the call."""

    call = 0

    delegate_call = 1


@dataclass(frozen=True, slots=True)
class SafeAuthorizationRequest:
    """A Safe transaction waiting for cosigner signatures.

    Immutable. Compute its hash with :py:func:`hash_safe_tx`.

    Gas refund parameters are zero by default, meaning
    the transaction submitter pays the gas and gets no refund.
    """

    #: Call target
    to: HexAddress

    #: Native currency sent along the call
    value: int = 0

    #: Call payload
    data: bytes = field(default=b"")

    #: Call or delegate call
    operation: SafeOperation = SafeOperation.call

    #: Gas for the inner call, 0 = all available
    safe_tx_gas: int = 0

    #: Gas costs independent of the inner call, used for refunds
    base_gas: int = 0

    #: Gas price used for the refund, 0 = no refund
    gas_price: int = 0

    #: Refund token, zero address = native currency
    gas_token: HexAddress = ZERO_ADDRESS

    #: Refund receiver, zero address = tx.origin
    refund_receiver: HexAddress = ZERO_ADDRESS

    #: Safe nonce this transaction consumes
    nonce: int = 0

    def __post_init__(self):
        assert type(self.value) == int and self.value >= 0, f"Bad value: {self.value}"
        assert type(self.nonce) == int and self.nonce >= 0, f"Bad nonce: {self.nonce}"
        assert isinstance(self.data, bytes), f"Data must be bytes, got {type(self.data)}"
        # Normalise addresses, so that the same request has only one representation
        object.__setattr__(self, "to", Web3.to_checksum_address(self.to))
        object.__setattr__(self, "gas_token", Web3.to_checksum_address(self.gas_token))
        object.__setattr__(self, "refund_receiver", Web3.to_checksum_address(self.refund_receiver))
        object.__setattr__(self, "operation", SafeOperation(self.operation))
        object.__setattr__(self, "data", bytes(self.data))

    def __repr__(self):
        return f"<SafeAuthorizationRequest to:{self.to} value:{self.value} data:0x{self.data[0:4].hex()}... operation:{self.operation.name} nonce:{self.nonce}>"

    def as_message(self) -> dict:
        """EIP-712 message payload for ``SafeTx``."""
        return {
            "to": self.to,
            "value": self.value,
            "data": self.data,
            "operation": int(self.operation),
            "safeTxGas": self.safe_tx_gas,
            "baseGas": self.base_gas,
            "gasPrice": self.gas_price,
            "gasToken": self.gas_token,
            "refundReceiver": self.refund_receiver,
            "nonce": self.nonce,
        }


def encode_safe_tx(request: SafeAuthorizationRequest, expected_signature: str | None = None) -> bytes:
    """Encode a Safe transaction into its fixed EIP-712 struct layout.

    - 11 words of 32 bytes: the ``SafeTx`` type hash followed by fields in the Safe contract order

    - ``data`` is replaced by its keccak hash

    :param expected_signature:
        Function the call data must encode, e.g. ``deploy(bytes32,bytes)``.
        If not given, any function in :py:data:`eth_deploy.abi.KNOWN_CALL_SIGNATURES` is accepted.

    :raise eth_deploy.abi.MalformedCallData:
        Call data does not decode as expected.
    """
    assert isinstance(request, SafeAuthorizationRequest), f"Got {type(request)}"
    validate_call_data(request.data, expected_signature)
    encoded = encode_data("SafeTx", request.as_message(), SAFE_TX_TYPES)
    assert len(encoded) == SAFE_TX_ENCODED_LENGTH
    return encoded


def build_safe_typed_data(
    request: SafeAuthorizationRequest,
    chain_id: int,
    safe_address: HexAddress | str,
) -> dict:
    """Build EIP-712 typed data for a Safe transaction.

    Can be passed to wallets for ``eth_signTypedData_v4``.
    """
    assert type(chain_id) == int, f"Chain id must be int, got {type(chain_id)}"
    return {
        "types": SAFE_TX_TYPES,
        "domain": {
            "chainId": chain_id,
            "verifyingContract": Web3.to_checksum_address(safe_address),
        },
        "primaryType": "SafeTx",
        "message": request.as_message(),
    }


def hash_safe_tx(
    request: SafeAuthorizationRequest,
    chain_id: int,
    safe_address: HexAddress | str,
    expected_signature: str | None = None,
) -> HexBytes:
    """Compute the Safe transaction hash cosigners sign.

    ``keccak256(0x1901 || domainSeparator(chainId, safe) || keccak256(encodeData(SafeTx)))``

    This is the same value as ``Safe.getTransactionHash()`` returns on-chain.

    :param expected_signature:
        See :py:func:`encode_safe_tx`

    :return:
        32 bytes digest
    """
    encode_safe_tx(request, expected_signature)
    typed_data = build_safe_typed_data(request, chain_id, safe_address)
    digest = HexBytes(eip712_encode_hash(typed_data))
    logger.debug("Safe tx hash for %s on chain %d, Safe %s: %s", request, chain_id, safe_address, digest.hex())
    return digest
