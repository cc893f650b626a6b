"""EIP-712 structured data hashing.

- Routines for EIP-712 encoding and hashing, used to compute Safe transaction hashes
  in :py:mod:`eth_deploy.safe.tx`

- `Based on Gnosis utilities <https://raw.githubusercontent.com/safe-global/safe-eth-py/master/gnosis/eth/eip712/__init__.py>`__,
  MIT licensed, (C) 2022 Judd Vinet, Uxío Fuentefría

Example:

.. code-block:: python

    typed_data = {
        "types": {
            "EIP712Domain": [
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "Mail": [
                {"name": "contents", "type": "string"},
            ],
        },
        "domain": {"chainId": 1, "verifyingContract": safe_address},
        "primaryType": "Mail",
        "message": {"contents": "Hello"},
    }
    digest = eip712_encode_hash(typed_data)
"""

import re
from typing import Any

from eth_abi import encode as encode_abi
from eth_typing import Hash32
from hexbytes import HexBytes
from web3 import Web3


#: Struct field definitions, type name -> list of {"name", "type"}
TypeDefinitions = dict[str, list[dict[str, str]]]


class EIP712EncodeError(ValueError):
    """Typed data is missing fields or types."""


def fast_keccak(value: bytes) -> bytes:
    return bytes(Web3.keccak(value))


def find_type_dependencies(primary_type: str, types: TypeDefinitions, results: list[str] | None = None) -> list[str]:
    """Find all struct types referenced from ``primary_type``, including itself."""
    if results is None:
        results = []

    primary_type = re.split(r"\W", primary_type)[0]
    if primary_type in results or not types.get(primary_type):
        return results
    results.append(primary_type)

    for field in types[primary_type]:
        for dep in find_type_dependencies(field["type"], types, results):
            if dep not in results:
                results.append(dep)

    return results


def encode_type(primary_type: str, types: TypeDefinitions) -> str:
    """Encode a struct type as ``Name(type1 field1,type2 field2)``.

    Referenced struct types are appended in alphabetical order.
    """
    deps = find_type_dependencies(primary_type, types)
    deps = [primary_type] + sorted(d for d in deps if d != primary_type)
    result = ""
    for typ in deps:
        fields = types.get(typ)
        if not fields:
            raise EIP712EncodeError(f"No type definition specified: {typ}")
        result += typ + "(" + ",".join(f"{f['type']} {f['name']}" for f in fields) + ")"
    return result


def hash_type(primary_type: str, types: TypeDefinitions) -> Hash32:
    return fast_keccak(encode_type(primary_type, types).encode())


def _encode_field(name: str, typ: str, value: Any, types: TypeDefinitions) -> tuple[str, Any]:
    if typ in types:
        if value is None:
            return "bytes32", b"\x00" * 32
        return "bytes32", fast_keccak(encode_data(typ, value, types))

    if value is None:
        raise EIP712EncodeError(f"Missing value for field {name} of type {typ}")

    # Accept hex strings for bytes and decimal strings for ints
    if "bytes" in typ and isinstance(value, str):
        value = HexBytes(value)

    if "int" in typ and isinstance(value, str):
        value = int(value)

    if typ == "bytes":
        return "bytes32", fast_keccak(value)

    if typ == "string":
        return "bytes32", fast_keccak(value.encode("utf-8"))

    if typ.endswith("]"):
        item_type = typ[: typ.rindex("[")]
        pairs = [_encode_field(name, item_type, v, types) for v in value]
        item_types = [t for t, _ in pairs]
        item_values = [v for _, v in pairs]
        return "bytes32", fast_keccak(encode_abi(item_types, item_values))

    return typ, value


def encode_data(primary_type: str, data: dict, types: TypeDefinitions) -> bytes:
    """Encode structured data as per EIP-712 ``encodeData``.

    Every field becomes a single 32 byte word. Dynamic values (``bytes``, ``string``, arrays and structs)
    are replaced by their hashes.

    This code is ported from the Javascript "eth-sig-util" package.
    """
    encoded_types = ["bytes32"]
    encoded_values: list[Any] = [hash_type(primary_type, types)]

    for field in types[primary_type]:
        try:
            value = data[field["name"]]
        except KeyError as e:
            raise EIP712EncodeError(f"{primary_type} is missing field {field['name']}") from e
        typ, val = _encode_field(field["name"], field["type"], value, types)
        encoded_types.append(typ)
        encoded_values.append(val)

    return encode_abi(encoded_types, encoded_values)


def hash_struct(primary_type: str, data: dict, types: TypeDefinitions) -> Hash32:
    return fast_keccak(encode_data(primary_type, data, types))


def eip712_encode(typed_data: dict[str, Any]) -> list[bytes]:
    """
    Given a dict of structured data and types, return a 3-element list of
    the encoded, signable data.

      0: The magic & version (0x1901)
      1: The domain separator
      2: The struct hash of the message
    """
    try:
        parts = [
            bytes.fromhex("1901"),
            hash_struct("EIP712Domain", typed_data["domain"], typed_data["types"]),
        ]
        if typed_data["primaryType"] != "EIP712Domain":
            parts.append(
                hash_struct(
                    typed_data["primaryType"],
                    typed_data["message"],
                    typed_data["types"],
                )
            )
        return parts
    except (KeyError, AttributeError, TypeError, IndexError) as exc:
        raise EIP712EncodeError(f"Not valid typed data {typed_data}") from exc


def eip712_encode_hash(typed_data: dict[str, Any]) -> Hash32:
    """
    :param typed_data: EIP712 structured data and types
    :return: Keccak256 hash of encoded signable data
    """
    return fast_keccak(b"".join(eip712_encode(typed_data)))
