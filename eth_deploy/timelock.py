"""Timelock governance operations.

Privileged calls, like proxy upgrades, go through an OpenZeppelin ``TimelockController``.
A call is first scheduled, and can be executed only after the minimum delay has passed,
giving stakeholders time to react.

- :py:func:`hash_operation` gives the same operation id as ``TimelockController.hashOperation()``

- :py:class:`TimelockScheduler` tracks operation states locally,
  so we know when an operation can be executed without asking the chain
  and refuse obviously invalid calls before spending gas

- :py:func:`encode_schedule_call` and friends build the calls we ask the Safe to make

Operation life cycle:

.. code-block:: text

    unscheduled --schedule--> scheduled --execute (when ready)--> executed
                                        --cancel--> cancelled

See

- https://github.com/OpenZeppelin/openzeppelin-contracts/blob/master/contracts/governance/TimelockController.sol
"""

import enum
import logging
import time
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Callable

import eth_abi
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ZERO_BYTES32, encode_with_signature
from eth_deploy.utils import atomic_write_json, read_json, wait_other_writers


logger = logging.getLogger(__name__)


#: ``TimelockController.getTimestamp()`` of an executed operation
DONE_TIMESTAMP = 1


class TimelockStateError(Exception):
    """Operation is not in a state that allows the requested action."""


class NotReady(TimelockStateError):
    """Operation is not scheduled, or its delay has not passed yet."""


class AlreadyFinalised(TimelockStateError):
    """Operation has already been executed or cancelled."""


class AlreadyScheduled(TimelockStateError):
    """Operation with the same id has already been scheduled."""


class DelayTooShort(TimelockStateError):
    """Requested delay is below the governance minimum."""


class OperationState(enum.Enum):
    unscheduled = "unscheduled"
    scheduled = "scheduled"
    executed = "executed"
    cancelled = "cancelled"


@dataclass(frozen=True, slots=True)
class TimelockCall:
    """A call the timelock makes once the delay has passed."""

    target: HexAddress

    data: bytes

    value: int = 0

    def __post_init__(self):
        object.__setattr__(self, "target", Web3.to_checksum_address(self.target))
        object.__setattr__(self, "data", bytes(HexBytes(self.data)))


@dataclass(slots=True)
class ScheduledOperation:
    """Local record of a scheduled timelock operation."""

    #: bytes32 operation id as 0x hex
    operation_id: str

    target: str

    value: int

    #: Call data as 0x hex
    data: str

    #: Operation that must have been executed first, 0x hex, zero = none
    predecessor: str

    #: 0x hex
    salt: str

    #: UNIX timestamp of scheduling
    scheduled_at: int

    #: Delay in seconds
    delay: int

    #: UNIX timestamp after which the operation can be executed
    ready_timestamp: int

    executed: bool = False

    cancelled: bool = False

    @property
    def state(self) -> OperationState:
        if self.executed:
            return OperationState.executed
        if self.cancelled:
            return OperationState.cancelled
        return OperationState.scheduled

    def is_finalised(self) -> bool:
        return self.executed or self.cancelled

    def get_call(self) -> TimelockCall:
        return TimelockCall(target=self.target, data=HexBytes(self.data), value=self.value)


def hash_operation(
    target: HexAddress | str,
    value: int,
    data: bytes,
    predecessor: bytes = ZERO_BYTES32,
    salt: bytes = ZERO_BYTES32,
) -> HexBytes:
    """Compute a timelock operation id.

    ``keccak256(abi.encode(target, value, data, predecessor, salt))``
    """
    encoded = eth_abi.encode(
        ["address", "uint256", "bytes", "bytes32", "bytes32"],
        [Web3.to_checksum_address(target), value, bytes(data), bytes(predecessor), bytes(salt)],
    )
    return HexBytes(Web3.keccak(encoded))


def encode_schedule_call(call: TimelockCall, predecessor: bytes, salt: bytes, delay: int) -> bytes:
    """``TimelockController.schedule()`` payload."""
    return encode_with_signature(
        "schedule(address,uint256,bytes,bytes32,bytes32,uint256)",
        [call.target, call.value, call.data, bytes(predecessor), bytes(salt), delay],
    )


def encode_execute_call(call: TimelockCall, predecessor: bytes, salt: bytes) -> bytes:
    """``TimelockController.execute()`` payload."""
    return encode_with_signature(
        "execute(address,uint256,bytes,bytes32,bytes32)",
        [call.target, call.value, call.data, bytes(predecessor), bytes(salt)],
    )


def encode_cancel_call(operation_id: bytes) -> bytes:
    """``TimelockController.cancel()`` payload."""
    return encode_with_signature("cancel(bytes32)", [bytes(operation_id)])


def fetch_operation_timestamp(ledger, timelock_address: HexAddress | str, operation_id: bytes) -> int:
    """Read ``TimelockController.getTimestamp()`` of an operation.

    :param ledger:
        :py:class:`eth_deploy.ledger.Ledger`

    :return:
        0 if unknown to the timelock, :py:data:`DONE_TIMESTAMP` if executed,
        otherwise the ready timestamp
    """
    data = ledger.call(timelock_address, encode_with_signature("getTimestamp(bytes32)", [bytes(operation_id)]))
    (timestamp,) = eth_abi.decode(["uint256"], data)
    return timestamp


def _to_bytes32(value: bytes | str) -> bytes:
    value = bytes(HexBytes(value))
    assert len(value) == 32, f"Expected 32 bytes, got {len(value)}: 0x{value.hex()}"
    return value


def _hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


class TimelockScheduler:
    """Track timelock operations.

    - ``min_delay`` is the governance configured minimum, we refuse anything shorter

    - If ``state_path`` is given, operation states are kept in a JSON file and
      survive process restarts

    - ``clock`` returns the current UNIX time. For a live chain,
      pass the latest block timestamp reader, as the chain decides
      when the timelock opens, not the local clock.
    """

    def __init__(
        self,
        min_delay: int,
        state_path: Path | str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        assert type(min_delay) == int and min_delay >= 0, f"Bad min delay: {min_delay}"
        self.min_delay = min_delay
        self.state_path = Path(state_path).absolute() if state_path else None
        self.clock = clock
        self.operations: dict[str, ScheduledOperation] = {}
        if self.state_path:
            self._load()

    def __repr__(self):
        return f"<TimelockScheduler min_delay:{self.min_delay}s operations:{len(self.operations)}>"

    def _load(self):
        data = read_json(self.state_path)
        for op_id, record in data.get("operations", {}).items():
            self.operations[op_id] = ScheduledOperation(**record)
        logger.info("Loaded %d timelock operations from %s", len(self.operations), self.state_path)

    def _commit(self, op: ScheduledOperation) -> ScheduledOperation:
        """Store an operation record.

        The state file is re-read under the lock, so records written meanwhile
        by other processes are kept. Memory is updated only after the write succeeds.
        """
        operations = dict(self.operations)
        if self.state_path:
            with wait_other_writers(self.state_path):
                for op_id, record in read_json(self.state_path).get("operations", {}).items():
                    operations[op_id] = ScheduledOperation(**record)
                operations[op.operation_id] = op
                atomic_write_json(self.state_path, {"operations": {k: asdict(v) for k, v in operations.items()}})
        else:
            operations[op.operation_id] = op
        self.operations = operations
        return op

    def now(self) -> int:
        return int(self.clock())

    def get_operation(self, operation_id: bytes | str) -> ScheduledOperation | None:
        return self.operations.get(_hex(_to_bytes32(operation_id)))

    def get_state(self, operation_id: bytes | str) -> OperationState:
        op = self.get_operation(operation_id)
        if op is None:
            return OperationState.unscheduled
        return op.state

    def validate_schedule(
        self,
        call: TimelockCall,
        predecessor: bytes | str = ZERO_BYTES32,
        salt: bytes | str = ZERO_BYTES32,
        delay: int | None = None,
    ) -> tuple[HexBytes, int]:
        """Check a call can be scheduled, without scheduling it.

        :return:
            Tuple (operation id, effective delay)

        :raise DelayTooShort:

        :raise AlreadyScheduled:
        """
        assert isinstance(call, TimelockCall), f"Got {type(call)}"

        if delay is None:
            delay = self.min_delay

        if delay < self.min_delay:
            raise DelayTooShort(f"Delay {delay}s for call to {call.target} is below the minimum timelock delay {self.min_delay}s")

        operation_id = hash_operation(call.target, call.value, call.data, _to_bytes32(predecessor), _to_bytes32(salt))
        existing = self.get_operation(operation_id)
        if existing is not None:
            raise AlreadyScheduled(f"Operation {existing.operation_id} is already {existing.state.value}, ready at {existing.ready_timestamp}")

        return operation_id, delay

    def schedule(
        self,
        call: TimelockCall,
        predecessor: bytes | str = ZERO_BYTES32,
        salt: bytes | str = ZERO_BYTES32,
        delay: int | None = None,
    ) -> HexBytes:
        """Schedule a call.

        :param predecessor:
            Operation id that must be executed before this one, zero for none

        :param delay:
            Seconds. Defaults to the minimum delay.

        :return:
            Operation id

        :raise DelayTooShort:
            ``delay`` is below the minimum

        :raise AlreadyScheduled:
            The same operation has been scheduled before
        """
        predecessor = _to_bytes32(predecessor)
        salt = _to_bytes32(salt)
        operation_id, delay = self.validate_schedule(call, predecessor, salt, delay)
        key = _hex(operation_id)

        now = self.now()
        op = ScheduledOperation(
            operation_id=key,
            target=call.target,
            value=call.value,
            data=_hex(call.data),
            predecessor=_hex(predecessor),
            salt=_hex(salt),
            scheduled_at=now,
            delay=delay,
            ready_timestamp=now + delay,
        )
        self._commit(op)
        logger.info("Scheduled timelock operation %s to %s, ready at %d", key, call.target, now + delay)
        return operation_id

    def is_ready(self, operation_id: bytes | str) -> bool:
        """Can the operation be executed now."""
        op = self.get_operation(operation_id)
        if op is None or op.is_finalised():
            return False
        return self.now() >= op.ready_timestamp

    def seconds_until_ready(self, operation_id: bytes | str) -> int:
        """How long until the delay has passed, 0 if already passed."""
        op = self._get_scheduled(operation_id)
        return max(0, op.ready_timestamp - self.now())

    def _get_scheduled(self, operation_id: bytes | str) -> ScheduledOperation:
        op = self.get_operation(operation_id)
        if op is None:
            raise NotReady(f"Operation {_hex(_to_bytes32(operation_id))} has not been scheduled")
        return op

    def check_executable(self, operation_id: bytes | str) -> ScheduledOperation:
        """Check an operation can be executed now, without executing it.

        :raise NotReady:

        :raise AlreadyFinalised:
        """
        op = self._get_scheduled(operation_id)

        if op.is_finalised():
            raise AlreadyFinalised(f"Operation {op.operation_id} is already {op.state.value}")

        now = self.now()
        if now < op.ready_timestamp:
            raise NotReady(f"Operation {op.operation_id} is ready at {op.ready_timestamp}, {op.ready_timestamp - now}s from now")

        if bytes(HexBytes(op.predecessor)) != ZERO_BYTES32:
            if self.get_state(op.predecessor) != OperationState.executed:
                raise NotReady(f"Operation {op.operation_id} waits for predecessor {op.predecessor} to be executed")

        return op

    def execute(self, operation_id: bytes | str) -> ScheduledOperation:
        """Mark an operation executed.

        :raise NotReady:
            Not scheduled, the delay has not passed, or the predecessor has not been executed

        :raise AlreadyFinalised:
            Already executed or cancelled
        """
        op = self._commit(replace(self.check_executable(operation_id), executed=True))
        logger.info("Executed timelock operation %s", op.operation_id)
        return op

    def mark_executed_onchain(self, operation_id: bytes | str) -> ScheduledOperation:
        """Record an execution we found on the chain.

        Someone has already executed the operation through the timelock contract,
        e.g. a previous run that timed out while waiting for the confirmation.
        The chain is the authority, so no readiness checks here.

        :raise NotReady:
            Not scheduled locally
        """
        op = self._get_scheduled(operation_id)
        if not op.executed:
            op = self._commit(replace(op, executed=True))
            logger.info("Timelock operation %s found executed on chain", op.operation_id)
        return op

    def cancel(self, operation_id: bytes | str) -> ScheduledOperation:
        """Mark an operation cancelled.

        :raise NotReady:
            Not scheduled

        :raise AlreadyFinalised:
            Already executed or cancelled
        """
        op = self._get_scheduled(operation_id)
        if op.is_finalised():
            raise AlreadyFinalised(f"Operation {op.operation_id} is already {op.state.value}")
        op = self._commit(replace(op, cancelled=True))
        logger.info("Cancelled timelock operation %s", op.operation_id)
        return op
