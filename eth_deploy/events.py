"""Decode events from transaction receipts.

Contracts deployed by the factory may create other contracts in their constructor,
e.g. OpenZeppelin v5 ``TransparentUpgradeableProxy`` creates its own ``ProxyAdmin``.
We find these addresses by filtering receipt logs by the event topic and the emitting contract,
never by the position of a log in the receipt.
"""

import logging

import eth_abi
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3


logger = logging.getLogger(__name__)


#: ERC-1967 proxy admin change
ADMIN_CHANGED_EVENT = "AdminChanged(address,address)"

#: ERC-1967 proxy implementation change
UPGRADED_EVENT = "Upgraded(address)"

#: ERC-1967 storage slot of the proxy admin, bytes32(uint256(keccak256("eip1967.proxy.admin")) - 1)
ERC1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

#: Safe inner call succeeded
SAFE_EXECUTION_SUCCESS_EVENT = "ExecutionSuccess(bytes32,uint256)"

#: Safe inner call failed
SAFE_EXECUTION_FAILURE_EVENT = "ExecutionFailure(bytes32,uint256)"


class SafeExecutionFailed(Exception):
    """Safe reported the inner call failed."""


def get_event_topic(event_signature: str) -> HexBytes:
    """Topic 0 of an event, keccak of its signature."""
    return HexBytes(Web3.keccak(text=event_signature))


def filter_logs(receipt: dict, event_signature: str, emitter: HexAddress | str | None = None) -> list[dict]:
    """Find logs of an event in a receipt.

    :param emitter:
        Only logs emitted by this contract

    :return:
        Matching logs in the order they were emitted
    """
    topic = get_event_topic(event_signature)
    emitter = Web3.to_checksum_address(emitter) if emitter else None
    matches = []
    for log in receipt.get("logs", []):
        topics = [HexBytes(t) for t in log["topics"]]
        if not topics or topics[0] != topic:
            continue
        if emitter and Web3.to_checksum_address(log["address"]) != emitter:
            continue
        matches.append(log)
    return matches


def find_proxy_admin(receipt: dict, proxy: HexAddress | str) -> HexAddress | None:
    """Find the admin a proxy was given in its constructor.

    Reads ``AdminChanged(address previousAdmin, address newAdmin)`` emitted by the proxy.

    :return:
        The latest new admin, or ``None`` if the proxy did not emit the event
    """
    logs = filter_logs(receipt, ADMIN_CHANGED_EVENT, emitter=proxy)
    if not logs:
        return None
    _previous_admin, new_admin = eth_abi.decode(["address", "address"], bytes(HexBytes(logs[-1]["data"])))
    logger.info("Proxy %s admin is %s", proxy, new_admin)
    return Web3.to_checksum_address(new_admin)


def find_proxy_implementation(receipt: dict, proxy: HexAddress | str) -> HexAddress | None:
    """Find the implementation set in ``Upgraded(address indexed implementation)``.

    :return:
        The latest implementation, or ``None`` if the proxy did not emit the event
    """
    logs = filter_logs(receipt, UPGRADED_EVENT, emitter=proxy)
    if not logs:
        return None
    topic = HexBytes(logs[-1]["topics"][1])
    return Web3.to_checksum_address("0x" + bytes(topic[12:]).hex())


def _decode_safe_execution_hash(log: dict) -> bytes:
    # Safe v1.4 indexes the tx hash, v1.3 does not
    topics = log["topics"]
    if len(topics) >= 2:
        return bytes(HexBytes(topics[1]))
    tx_hash, _payment = eth_abi.decode(["bytes32", "uint256"], bytes(HexBytes(log["data"])))
    return tx_hash


def assert_safe_execution_success(receipt: dict, safe_address: HexAddress | str, safe_tx_hash: bytes):
    """Check that the Safe executed our transaction.

    :raise SafeExecutionFailed:
        The Safe emitted ``ExecutionFailure`` for the hash, or did not emit ``ExecutionSuccess`` at all
    """
    safe_tx_hash = bytes(safe_tx_hash)

    for log in filter_logs(receipt, SAFE_EXECUTION_FAILURE_EVENT, emitter=safe_address):
        if _decode_safe_execution_hash(log) == safe_tx_hash:
            raise SafeExecutionFailed(f"Safe {safe_address} reported ExecutionFailure for Safe tx 0x{safe_tx_hash.hex()}")

    for log in filter_logs(receipt, SAFE_EXECUTION_SUCCESS_EVENT, emitter=safe_address):
        if _decode_safe_execution_hash(log) == safe_tx_hash:
            return

    raise SafeExecutionFailed(f"Safe {safe_address} did not emit ExecutionSuccess for Safe tx 0x{safe_tx_hash.hex()}")


def fetch_erc1967_admin(ledger, proxy: HexAddress | str) -> HexAddress | None:
    """Read the admin of a deployed proxy from its ERC-1967 storage slot.

    Works for proxies deployed in an earlier run, when we no longer have the receipt.

    :return:
        The admin, or ``None`` if the slot is empty
    """
    value = ledger.get_storage_at(proxy, ERC1967_ADMIN_SLOT)
    admin = bytes(value)[-20:]
    if admin == b"\x00" * 20:
        return None
    return Web3.to_checksum_address(admin)
