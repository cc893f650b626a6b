"""Timelock operation tracking."""

import pytest
from eth_abi import encode
from web3 import Web3

from eth_deploy import timelock
from eth_deploy.abi import ZERO_BYTES32, decode_with_signature, encode_with_signature
from eth_deploy.timelock import (
    AlreadyFinalised,
    AlreadyScheduled,
    DelayTooShort,
    NotReady,
    OperationState,
    TimelockCall,
    TimelockScheduler,
    encode_cancel_call,
    encode_execute_call,
    encode_schedule_call,
    hash_operation,
)


PROXY_ADMIN = Web3.to_checksum_address("0x5a6e5d2faa3a0c6d2ab9e0ca3f3fe5ff0e3b7b4c")

PROXY = Web3.to_checksum_address("0x343c43a37d37dff08ae8c4a11544c718abb4fcf8")

NEW_IMPLEMENTATION = Web3.to_checksum_address("0x4d1a2e2bb4f88f0250f26ffff098b0b30b26bf38")

DAY = 24 * 3600


class FakeClock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(1_700_000_000)


@pytest.fixture()
def scheduler(clock) -> TimelockScheduler:
    return TimelockScheduler(min_delay=DAY, clock=clock)


@pytest.fixture()
def upgrade_call() -> TimelockCall:
    return TimelockCall(
        target=PROXY_ADMIN,
        data=encode_with_signature("upgradeAndCall(address,address,bytes)", [PROXY, NEW_IMPLEMENTATION, b""]),
    )


def test_hash_operation():
    """Same as TimelockController.hashOperation()."""
    data = b"\x01\x02"
    salt = b"\x05" * 32
    expected = Web3.keccak(encode(["address", "uint256", "bytes", "bytes32", "bytes32"], [PROXY_ADMIN, 0, data, ZERO_BYTES32, salt]))
    assert hash_operation(PROXY_ADMIN, 0, data, ZERO_BYTES32, salt) == expected
    assert hash_operation(PROXY_ADMIN, 0, data, ZERO_BYTES32, b"\x06" * 32) != expected


def test_timelock_call_data(upgrade_call):
    """Calldata for the timelock contract."""
    salt = b"\x05" * 32
    target, value, data, predecessor, salt_, delay = decode_with_signature(
        "schedule(address,uint256,bytes,bytes32,bytes32,uint256)",
        encode_schedule_call(upgrade_call, ZERO_BYTES32, salt, DAY),
    )
    assert Web3.to_checksum_address(target) == PROXY_ADMIN
    assert data == upgrade_call.data
    assert salt_ == salt
    assert delay == DAY

    execute_args = decode_with_signature("execute(address,uint256,bytes,bytes32,bytes32)", encode_execute_call(upgrade_call, ZERO_BYTES32, salt))
    assert execute_args[2] == upgrade_call.data

    op_id = hash_operation(upgrade_call.target, 0, upgrade_call.data, ZERO_BYTES32, salt)
    assert decode_with_signature("cancel(bytes32)", encode_cancel_call(op_id)) == (bytes(op_id),)


def test_schedule_and_execute(scheduler, clock, upgrade_call):
    """Execution opens exactly at the ready time, and only once."""
    op_id = scheduler.schedule(upgrade_call)
    op = scheduler.get_operation(op_id)
    assert op.ready_timestamp == clock.now + DAY
    assert scheduler.get_state(op_id) == OperationState.scheduled
    assert not scheduler.is_ready(op_id)
    assert scheduler.seconds_until_ready(op_id) == DAY

    with pytest.raises(NotReady, match=str(op.ready_timestamp)):
        scheduler.execute(op_id)

    clock.now += DAY - 1
    with pytest.raises(NotReady):
        scheduler.execute(op_id)

    clock.now += 1
    assert scheduler.is_ready(op_id)
    scheduler.execute(op_id)
    assert scheduler.get_state(op_id) == OperationState.executed
    assert not scheduler.is_ready(op_id)

    with pytest.raises(AlreadyFinalised):
        scheduler.execute(op_id)


def test_execute_unscheduled(scheduler):
    with pytest.raises(NotReady, match="not been scheduled"):
        scheduler.execute(b"\x01" * 32)
    assert scheduler.get_state(b"\x01" * 32) == OperationState.unscheduled


def test_delay_floor(scheduler, upgrade_call):
    with pytest.raises(DelayTooShort, match=PROXY_ADMIN):
        scheduler.schedule(upgrade_call, delay=DAY - 1)
    op_id = scheduler.schedule(upgrade_call, delay=2 * DAY)
    assert scheduler.get_operation(op_id).delay == 2 * DAY


def test_schedule_twice(scheduler, upgrade_call):
    scheduler.schedule(upgrade_call)
    with pytest.raises(AlreadyScheduled):
        scheduler.schedule(upgrade_call)
    # Different salt is a different operation
    scheduler.schedule(upgrade_call, salt=b"\x01" * 32)


def test_cancel(scheduler, clock, upgrade_call):
    op_id = scheduler.schedule(upgrade_call)
    scheduler.cancel(op_id)
    assert scheduler.get_state(op_id) == OperationState.cancelled

    clock.now += DAY
    with pytest.raises(AlreadyFinalised):
        scheduler.execute(op_id)
    with pytest.raises(AlreadyFinalised):
        scheduler.cancel(op_id)

    with pytest.raises(NotReady):
        scheduler.cancel(b"\x02" * 32)


def test_predecessor(scheduler, clock, upgrade_call):
    first = scheduler.schedule(upgrade_call)
    second_call = TimelockCall(target=PROXY_ADMIN, data=encode_with_signature("upgradeAndCall(address,address,bytes)", [PROXY, PROXY, b""]))
    second = scheduler.schedule(second_call, predecessor=first)

    clock.now += DAY
    with pytest.raises(NotReady, match="predecessor"):
        scheduler.execute(second)

    scheduler.execute(first)
    scheduler.execute(second)


def test_persistence(tmp_path, clock, upgrade_call):
    """Scheduled operations survive a restart."""
    state_path = tmp_path / "timelock.json"
    scheduler = TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock)
    op_id = scheduler.schedule(upgrade_call)

    restarted = TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock)
    assert restarted.get_state(op_id) == OperationState.scheduled
    assert restarted.get_operation(op_id).get_call() == upgrade_call

    clock.now += DAY
    restarted.execute(op_id)
    assert TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock).get_state(op_id) == OperationState.executed


def test_mark_executed_onchain(scheduler, upgrade_call):
    """Chain says done, we believe it even before our own clock agrees."""
    op_id = scheduler.schedule(upgrade_call)
    scheduler.mark_executed_onchain(op_id)
    assert scheduler.get_state(op_id) == OperationState.executed


def test_concurrent_schedulers_keep_each_other(tmp_path, clock, upgrade_call):
    """Two processes sharing a state file do not overwrite each other's operations."""
    state_path = tmp_path / "timelock.json"
    first = TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock)
    second = TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock)

    first_id = first.schedule(upgrade_call)
    second_id = second.schedule(upgrade_call, salt=b"\x01" * 32)
    assert second.get_state(first_id) == OperationState.scheduled

    restarted = TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock)
    assert restarted.get_state(first_id) == OperationState.scheduled
    assert restarted.get_state(second_id) == OperationState.scheduled


def test_failed_write_leaves_state_untouched(tmp_path, clock, upgrade_call, monkeypatch):
    """Memory and disk agree after a state file write fails."""
    state_path = tmp_path / "timelock.json"
    scheduler = TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock)
    op_id = scheduler.schedule(upgrade_call)
    clock.now += DAY

    def _broken_write(path, data):
        raise OSError("Disk full")

    monkeypatch.setattr(timelock, "atomic_write_json", _broken_write)
    with pytest.raises(OSError):
        scheduler.execute(op_id)
    with pytest.raises(OSError):
        scheduler.schedule(upgrade_call, salt=b"\x02" * 32)

    assert scheduler.get_state(op_id) == OperationState.scheduled
    assert len(scheduler.operations) == 1
    monkeypatch.undo()

    assert TimelockScheduler(min_delay=DAY, state_path=state_path, clock=clock).get_state(op_id) == OperationState.scheduled
    scheduler.execute(op_id)
    assert scheduler.get_state(op_id) == OperationState.executed
