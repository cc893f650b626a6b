"""Deterministic deployment addresses.

- ``CREATE2`` (EIP-1014) addresses depend on the deployer, salt and the init code hash

- ``CREATE3`` addresses depend only on the factory and the salt. The factory
  first ``CREATE2`` deploys a tiny proxy with fixed bytecode, and the proxy then
  ``CREATE`` deploys the real contract as its first and only deployment (nonce 1).

Because a ``CREATE3`` address does not depend on the contract bytecode,
we can announce the address before the bytecode is final, and get
the same address on every chain where the factory lives.

See

- https://github.com/transmissions11/solmate/blob/main/src/utils/CREATE3.sol

- https://github.com/ZeframLou/create3-factory
"""

import logging
from dataclasses import dataclass

import rlp
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3


logger = logging.getLogger(__name__)


#: Init code of the one-shot proxy the CREATE3 factory deploys with CREATE2.
#:
#: The proxy CREATEs whatever init code it is called with.
CREATE3_PROXY_INIT_CODE = HexBytes("0x67363d3d37363d34f03d5260086018f3")

#: keccak256(CREATE3_PROXY_INIT_CODE)
CREATE3_PROXY_INIT_CODE_HASH = HexBytes(Web3.keccak(CREATE3_PROXY_INIT_CODE))


class AddressCollisionError(Exception):
    """Deterministic address is occupied by unexpected code."""


@dataclass(frozen=True, slots=True)
class DeploymentAddress:
    """A predicted deployment address and how it was derived."""

    #: 32 bytes salt as given to the factory
    salt: bytes

    #: Factory contract address
    factory: HexAddress

    #: The CREATE2 proxy deployer address
    proxy_deployer: HexAddress

    #: Where the contract lands
    address: HexAddress

    #: Init code hash of the contract we are going to deploy, if known
    init_code_hash: bytes | None = None

    def __repr__(self):
        return f"<DeploymentAddress {self.address} factory:{self.factory} salt:0x{self.salt.hex()}>"


def _to_salt(salt: bytes | str) -> bytes:
    salt = bytes(HexBytes(salt))
    assert len(salt) == 32, f"Salt must be 32 bytes, got {len(salt)}: 0x{salt.hex()}"
    return salt


def compute_create2_address(deployer: HexAddress | str, salt: bytes | str, init_code_hash: bytes | str) -> HexAddress:
    """Compute a CREATE2 address.

    ``keccak256(0xff ++ deployer ++ salt ++ init_code_hash)[12:]``
    """
    salt = _to_salt(salt)
    init_code_hash = bytes(HexBytes(init_code_hash))
    assert len(init_code_hash) == 32, f"Init code hash must be 32 bytes, got {len(init_code_hash)}"
    deployer = Web3.to_checksum_address(deployer)
    raw = Web3.keccak(b"\xff" + bytes(HexBytes(deployer)) + salt + init_code_hash)
    return Web3.to_checksum_address("0x" + bytes(raw[12:]).hex())


def compute_create_address(deployer: HexAddress | str, nonce: int) -> HexAddress:
    """Compute a CREATE address.

    ``keccak256(rlp([deployer, nonce]))[12:]``
    """
    assert type(nonce) == int and nonce >= 0, f"Bad nonce {nonce}"
    deployer_bytes = bytes(HexBytes(Web3.to_checksum_address(deployer)))
    raw = Web3.keccak(rlp.encode([deployer_bytes, nonce]))
    return Web3.to_checksum_address("0x" + bytes(raw[12:]).hex())


def guard_salt(sender: HexAddress | str, salt: bytes | str) -> bytes:
    """Namespace a salt by its sender.

    Factories like ``CREATE3Factory`` hash the caller address into the salt,
    so that nobody else can squat the address.

    ``keccak256(abi.encodePacked(sender, salt))``
    """
    return bytes(Web3.keccak(bytes(HexBytes(Web3.to_checksum_address(sender))) + _to_salt(salt)))


def compute_create3_address(
    factory: HexAddress | str,
    salt: bytes | str,
    init_code_hash: bytes | str | None = None,
    sender: HexAddress | str | None = None,
) -> DeploymentAddress:
    """Predict where a CREATE3 factory deploys a contract.

    - First hop: the proxy deployer ``CREATE2(factory, salt, CREATE3_PROXY_INIT_CODE_HASH)``

    - Second hop: the first ``CREATE`` of the proxy deployer

    Example:

    .. code-block:: python

        predicted = compute_create3_address(factory, salt, Web3.keccak(init_code))
        print(f"Contract will be deployed at {predicted.address}")

    :param init_code_hash:
        Carried along for collision checks. Does not affect the address.

    :param sender:
        Set if the factory namespaces the salt by its caller, see :py:func:`guard_salt`.
    """
    salt = _to_salt(salt)
    factory = Web3.to_checksum_address(factory)
    effective_salt = guard_salt(sender, salt) if sender else salt
    proxy_deployer = compute_create2_address(factory, effective_salt, CREATE3_PROXY_INIT_CODE_HASH)
    address = compute_create_address(proxy_deployer, 1)
    return DeploymentAddress(
        salt=salt,
        factory=factory,
        proxy_deployer=proxy_deployer,
        address=address,
        init_code_hash=bytes(HexBytes(init_code_hash)) if init_code_hash is not None else None,
    )


def check_address_collision(
    ledger,
    address: HexAddress | str,
    expected_code_hash: bytes | str | None = None,
) -> bool:
    """Check if a deterministic address is free.

    Deploying on an occupied address either reverts or silently does nothing,
    so we need to know before we broadcast.

    :param ledger:
        :py:class:`eth_deploy.ledger.Ledger`

    :param expected_code_hash:
        keccak256 of the runtime code we expect, if we know it

    :return:
        ``False`` if there is no code at the address.
        ``True`` if the expected code is already deployed there.

    :raise AddressCollisionError:
        There is code at the address and it is not the code we expect.
    """
    address = Web3.to_checksum_address(address)
    code = ledger.get_code(address)
    if not code:
        return False

    code_hash = HexBytes(Web3.keccak(code))
    if expected_code_hash is not None and code_hash == HexBytes(expected_code_hash):
        logger.info("Expected code already deployed at %s", address)
        return True

    expected = "0x" + bytes(HexBytes(expected_code_hash)).hex() if expected_code_hash is not None else "<not given>"
    raise AddressCollisionError(f"Address {address} is occupied by code with hash 0x{code_hash.hex()}, expected code hash {expected}")
