"""Ledger access, gas and transaction confirmation."""

import datetime
import secrets

import pytest
from eth_account import Account
from hexbytes import HexBytes
from web3 import EthereumTesterProvider, Web3

from eth_deploy.confirmation import ConfirmationPending, TransactionReverted, broadcast_and_wait, wait_for_confirmation
from eth_deploy.gas import GasPriceMethod, apply_gas
from eth_deploy.hotwallet import HotWallet
from eth_deploy.ledger import NetworkError, Web3Ledger


@pytest.fixture
def tester_provider():
    # https://web3py.readthedocs.io/en/stable/examples.html#contract-unit-tests-in-python
    return EthereumTesterProvider()


@pytest.fixture
def web3(tester_provider):
    """Set up a local unit testing blockchain."""
    return Web3(tester_provider)


@pytest.fixture
def ledger(web3) -> Web3Ledger:
    return Web3Ledger(web3, sleep=0)


@pytest.fixture()
def deployer(web3) -> str:
    return web3.eth.accounts[0]


@pytest.fixture()
def hot_wallet(web3, deployer) -> HotWallet:
    """Hot wallet with some ETH."""
    wallet = HotWallet(Account.from_key(HexBytes(secrets.token_bytes(32))))
    web3.eth.send_transaction({"from": deployer, "to": wallet.address, "value": 10**18})
    return wallet


def test_reads(web3, ledger, deployer):
    assert ledger.get_chain_id() == web3.eth.chain_id
    assert ledger.get_code(deployer) == b""
    assert ledger.get_transaction_count(deployer) == 0
    assert ledger.get_latest_block_timestamp() == web3.eth.get_block("latest")["timestamp"]
    assert ledger.get_transaction_receipt(HexBytes(b"\x01" * 32)) is None
    assert ledger.get_storage_at(deployer, 0) == b"\x00" * 32


def test_gas_price(ledger):
    suggestion = ledger.estimate_gas_price()
    assert suggestion.method == GasPriceMethod.london
    assert suggestion.max_fee_per_gas == suggestion.max_priority_fee_per_gas + 2 * suggestion.base_fee

    tx = apply_gas({"gasPrice": 1}, suggestion)
    assert "gasPrice" not in tx
    assert tx["maxFeePerGas"] == suggestion.max_fee_per_gas


def test_broadcast_and_wait(web3, ledger, hot_wallet, deployer):
    """Hot wallet transfer goes through."""
    hot_wallet.sync_nonce(ledger)
    assert hot_wallet.current_nonce == 0

    tx = {"to": deployer, "value": 1000, "gas": 21_000, "chainId": ledger.get_chain_id()}
    apply_gas(tx, ledger.estimate_gas_price())
    signed = hot_wallet.sign_transaction_with_new_nonce(tx)
    assert signed.nonce == 0
    assert hot_wallet.current_nonce == 1

    receipt = broadcast_and_wait(ledger, signed, poll_delay=datetime.timedelta(0))
    assert receipt["status"] == 1
    assert ledger.get_transaction_count(hot_wallet.address) == 1


class FlakyEth:
    """Fails the first calls like a node under load."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    @property
    def chain_id(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("Connection reset by peer")
        return 1


class FlakyWeb3:
    def __init__(self, failures: int):
        self.eth = FlakyEth(failures)
        self.provider = "flaky"


def test_retry():
    ledger = Web3Ledger(FlakyWeb3(failures=2), sleep=0, retries=3)
    assert ledger.get_chain_id() == 1
    assert ledger.retry_count == 2


def test_retry_gives_up():
    ledger = Web3Ledger(FlakyWeb3(failures=10), sleep=0, retries=3)
    with pytest.raises(NetworkError, match="eth_chainId"):
        ledger.get_chain_id()


class NeverMinedLedger(Web3Ledger):
    def get_transaction_receipt(self, tx_hash):
        return None


class RevertedLedger(Web3Ledger):
    def get_transaction_receipt(self, tx_hash):
        return {"status": 0, "blockNumber": 1}


def test_confirmation_pending(web3):
    """Running out of polls is reported with the tx hash."""
    tx_hash = HexBytes(b"\x02" * 32)
    with pytest.raises(ConfirmationPending) as exc_info:
        wait_for_confirmation(NeverMinedLedger(web3), tx_hash, max_polls=3, poll_delay=datetime.timedelta(0))
    assert exc_info.value.tx_hash == tx_hash


def test_confirmation_reverted(web3):
    with pytest.raises(TransactionReverted):
        wait_for_confirmation(RevertedLedger(web3), HexBytes(b"\x02" * 32), max_polls=1, poll_delay=datetime.timedelta(0))


class DeadNodeLedger(Web3Ledger):
    def get_transaction_receipt(self, tx_hash):
        raise NetworkError("eth_getTransactionReceipt failed after 3 attempts")


def test_confirmation_node_down(web3):
    """Node dying while we poll leaves the transaction pending, not failed."""
    tx_hash = HexBytes(b"\x03" * 32)
    with pytest.raises(ConfirmationPending, match="re-run to resume") as exc_info:
        wait_for_confirmation(DeadNodeLedger(web3), tx_hash, max_polls=3, poll_delay=datetime.timedelta(0))
    assert exc_info.value.tx_hash == tx_hash
