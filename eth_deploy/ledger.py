"""JSON-RPC ledger access.

All chain access of the deployment goes through :py:class:`Ledger`.

- :py:class:`Web3Ledger` talks to a JSON-RPC node using web3.py

- Network failures are retried with an exponential backoff, and after that
  surfaced as :py:class:`NetworkError`

- Tests can swap in an in-memory ledger
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, TypeVar

import requests
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from eth_deploy.gas import GasPriceSuggestion, estimate_gas_price


logger = logging.getLogger(__name__)

T = TypeVar("T")


#: Exceptions we consider temporary network problems
DEFAULT_RETRYABLE_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    ConnectionError,
    TimeoutError,
)


class NetworkError(Exception):
    """JSON-RPC node did not answer, even after retries."""


class Ledger(ABC):
    """Abstract chain access needed by the deployment."""

    @abstractmethod
    def get_chain_id(self) -> int:
        """Chain id of the connected network."""

    @abstractmethod
    def get_code(self, address: HexAddress) -> bytes:
        """Runtime code at an address, empty if none."""

    @abstractmethod
    def get_transaction_count(self, address: HexAddress) -> int:
        """Next nonce of an account."""

    @abstractmethod
    def get_storage_at(self, address: HexAddress, slot: int) -> bytes:
        """32 bytes storage slot value."""

    @abstractmethod
    def call(self, to: HexAddress, data: bytes) -> bytes:
        """Read-only ``eth_call`` against the latest block."""

    @abstractmethod
    def estimate_gas(self, tx: dict) -> int:
        """Gas limit estimate for a transaction."""

    @abstractmethod
    def estimate_gas_price(self) -> GasPriceSuggestion:
        """Gas price for a transaction we want included soon."""

    @abstractmethod
    def send_raw_transaction(self, raw_tx: bytes) -> HexBytes:
        """Broadcast a signed transaction.

        :return:
            Transaction hash
        """

    @abstractmethod
    def get_transaction_receipt(self, tx_hash: HexBytes) -> dict | None:
        """Receipt of a mined transaction, ``None`` if not mined yet."""

    @abstractmethod
    def get_latest_block_timestamp(self) -> int:
        """UNIX timestamp of the latest block."""


class Web3Ledger(Ledger):
    """Ledger backed by a web3.py connection.

    Example:

    .. code-block:: python

        web3 = Web3(HTTPProvider(config.execution_rpc))
        ledger = Web3Ledger(web3)
        print(f"Connected to chain {ledger.get_chain_id()}")

    :param sleep:
        Seconds between retries.

    :param backoff:
        Multiplier to increase sleep.

    :param retries:
        How many retries we attempt before giving up.
    """

    def __init__(
        self,
        web3: Web3,
        retryable_exceptions=DEFAULT_RETRYABLE_EXCEPTIONS,
        sleep: float = 5.0,
        backoff: float = 1.6,
        retries: int = 6,
    ):
        self.web3 = web3
        self.retryable_exceptions = retryable_exceptions
        self.sleep = sleep
        self.backoff = backoff
        self.retries = retries
        self.retry_count = 0

    def __repr__(self):
        return f"<Web3Ledger {self.web3.provider}>"

    def _with_retries(self, name: str, func: Callable[[], T]) -> T:
        current_sleep = self.sleep
        for i in range(self.retries + 1):
            try:
                return func()
            except self.retryable_exceptions as e:
                if i >= self.retries:
                    raise NetworkError(f"JSON-RPC {name} failed after {self.retries} retries: {e}") from e
                logger.warning(
                    "Encountered JSON-RPC retryable error %s\nWhen calling: %s\nRetrying in %f seconds, retry #%d / %d",
                    e,
                    name,
                    current_sleep,
                    i + 1,
                    self.retries,
                )
                time.sleep(current_sleep)
                current_sleep *= self.backoff
                self.retry_count += 1

        raise AssertionError("Should never be reached")

    def get_chain_id(self) -> int:
        return self._with_retries("eth_chainId", lambda: self.web3.eth.chain_id)

    def get_code(self, address: HexAddress) -> bytes:
        address = Web3.to_checksum_address(address)
        return bytes(self._with_retries("eth_getCode", lambda: self.web3.eth.get_code(address)))

    def get_transaction_count(self, address: HexAddress) -> int:
        address = Web3.to_checksum_address(address)
        return self._with_retries("eth_getTransactionCount", lambda: self.web3.eth.get_transaction_count(address))

    def get_storage_at(self, address: HexAddress, slot: int) -> bytes:
        address = Web3.to_checksum_address(address)
        return bytes(self._with_retries("eth_getStorageAt", lambda: self.web3.eth.get_storage_at(address, slot)))

    def call(self, to: HexAddress, data: bytes) -> bytes:
        tx = {"to": Web3.to_checksum_address(to), "data": HexBytes(data)}
        return bytes(self._with_retries("eth_call", lambda: self.web3.eth.call(tx)))

    def estimate_gas(self, tx: dict) -> int:
        return self._with_retries("eth_estimateGas", lambda: self.web3.eth.estimate_gas(tx))

    def estimate_gas_price(self) -> GasPriceSuggestion:
        return self._with_retries("gas price", lambda: estimate_gas_price(self.web3))

    def send_raw_transaction(self, raw_tx: bytes) -> HexBytes:
        # Re-broadcasting the same signed payload is harmless, so we can retry
        return HexBytes(self._with_retries("eth_sendRawTransaction", lambda: self.web3.eth.send_raw_transaction(raw_tx)))

    def get_transaction_receipt(self, tx_hash: HexBytes) -> dict | None:
        def _get():
            try:
                return dict(self.web3.eth.get_transaction_receipt(tx_hash))
            except TransactionNotFound:
                return None

        return self._with_retries("eth_getTransactionReceipt", _get)

    def get_latest_block_timestamp(self) -> int:
        return self._with_retries("eth_getBlockByNumber", lambda: self.web3.eth.get_block("latest")["timestamp"])
