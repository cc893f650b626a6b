"""ABI encode/decode helpers.

We do not load contract ABI files. All calls this package makes are described by
their Solidity function signature, like ``deploy(bytes32,bytes)``, and encoded with
:py:func:`encode_with_signature`.

Before we ask anyone to sign a call, we check that its payload decodes
to a function we know about. See :py:func:`validate_call_data`.
"""

from functools import lru_cache
from typing import Sequence

import eth_abi
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3


#: Ethereum 0x0000000000000000000000000000000000000000 address
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

#: bytes32 zero, used as "no predecessor" and "no salt"
ZERO_BYTES32 = b"\x00" * 32


#: Function signatures of calls we may put in front of signers.
#:
#: Selector -> Solidity function signature.
#:
#: - Deterministic deployment factory entry point
#:
#: - OpenZeppelin v5 ``ProxyAdmin`` upgrade
#:
#: - OpenZeppelin ``TimelockController`` governance
#:
KNOWN_CALL_SIGNATURES = [
    "deploy(bytes32,bytes)",
    "upgradeAndCall(address,address,bytes)",
    "schedule(address,uint256,bytes,bytes32,bytes32,uint256)",
    "execute(address,uint256,bytes,bytes32,bytes32)",
    "cancel(bytes32)",
]


class MalformedCallData(ValueError):
    """Call data does not match the function layout it claims to be."""


@lru_cache(maxsize=128)
def get_argument_types(function_signature: str) -> tuple[str, ...]:
    """Extract ABI argument types from a Solidity function signature.

    Tuple arguments are not supported.

    Example:

    .. code-block:: python

        assert get_argument_types("cancel(bytes32)") == ("bytes32",)
    """
    assert "(" in function_signature and function_signature.endswith(")"), f"Not a function signature: {function_signature}"
    selector_text = function_signature[function_signature.find("(") + 1 : function_signature.rfind(")")]
    if not selector_text:
        return tuple()
    return tuple(selector_text.split(","))


@lru_cache(maxsize=128)
def get_function_selector(function_signature: str) -> bytes:
    """Get Solidity function selector.

    :return:
        First 4 bytes of the keccak hash of the signature.
    """
    return bytes(Web3.keccak(text=function_signature)[0:4])


def encode_with_signature(function_signature: str, args: Sequence) -> bytes:
    """Mimic Solidity's abi.encodeWithSignature() in Python.

    Example:

    .. code-block:: python

            payload = encode_with_signature("deploy(bytes32,bytes)", [salt, init_code])
            assert type(payload) == bytes

    :param function_signature:
        Solidity function signature that can be hashed to a selector.

        ABI fill be extracted from this signature.

    :param args:
        Argument values to be encoded.
    """

    assert type(args) in (tuple, list)
    arg_types = get_argument_types(function_signature)
    encoded_args = eth_abi.encode(arg_types, args)
    return get_function_selector(function_signature) + encoded_args


def decode_with_signature(function_signature: str, data: bytes) -> tuple:
    """Decode call data created by :py:func:`encode_with_signature`.

    The payload must be in the canonical ABI encoding. Re-encoding the decoded arguments
    must give back the same bytes, so there cannot be any garbage hidden
    at the end of the payload.

    :raise MalformedCallData:
        The selector or the arguments do not match the signature.
    """
    data = bytes(HexBytes(data))
    selector = get_function_selector(function_signature)
    if data[0:4] != selector:
        raise MalformedCallData(f"Call data selector 0x{data[0:4].hex()} does not match {function_signature} selector 0x{selector.hex()}")

    arg_types = get_argument_types(function_signature)
    payload = data[4:]
    try:
        args = eth_abi.decode(arg_types, payload)
    except (DecodingError, OverflowError, ValueError) as e:
        raise MalformedCallData(f"Could not decode arguments of {function_signature} from payload 0x{payload.hex()}") from e

    if eth_abi.encode(arg_types, args) != payload:
        raise MalformedCallData(f"Arguments of {function_signature} are not in the canonical encoding, {len(payload)} bytes of payload")

    return args


def get_known_call_signature(data: bytes) -> str | None:
    """Map call data to one of :py:data:`KNOWN_CALL_SIGNATURES`.

    :return:
        Function signature or ``None`` if the selector is not known.
    """
    selector = bytes(data[0:4])
    for signature in KNOWN_CALL_SIGNATURES:
        if get_function_selector(signature) == selector:
            return signature
    return None


def validate_call_data(data: bytes, expected_signature: str | None = None) -> tuple:
    """Check that a call payload is something we know how to verify.

    - Empty payload is a plain value transfer and always valid

    - If ``expected_signature`` is given, the payload must be a call to that function

    - Otherwise the payload must be a call to one of :py:data:`KNOWN_CALL_SIGNATURES`

    :return:
        Decoded arguments

    :raise MalformedCallData:
        Unknown function or bad arguments
    """
    data = bytes(HexBytes(data))

    if len(data) == 0:
        return tuple()

    if len(data) < 4:
        raise MalformedCallData(f"Call data 0x{data.hex()} is too short to contain a function selector")

    if expected_signature is None:
        expected_signature = get_known_call_signature(data)
        if expected_signature is None:
            raise MalformedCallData(f"Unknown function selector 0x{data[0:4].hex()}, known functions are {KNOWN_CALL_SIGNATURES}")

    return decode_with_signature(expected_signature, data)
