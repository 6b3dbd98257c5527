"""
Minimal ABI encoding/decoding helpers.

Only the shapes the vault pipeline needs: static words, dynamic ``bytes``,
``string`` return values and the bundler's ``Call[]`` argument.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from eth_utils import keccak


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def encode_uint(value: int) -> str:
    if value < 0:
        raise ValueError("Value must be non-negative")
    if value >= 2**256:
        raise ValueError("Value does not fit in uint256")
    return format(value, "064x")


def encode_address(address: str) -> str:
    addr = _strip_0x(address).lower()
    if len(addr) != 40:
        raise ValueError(f"Invalid address length: {address}")
    return addr.rjust(64, "0")


def encode_bool(value: bool) -> str:
    return encode_uint(1 if value else 0)


def encode_bytes32(value: str) -> str:
    data = _strip_0x(value)
    if len(data) > 64:
        raise ValueError("bytes32 value longer than 32 bytes")
    return data.ljust(64, "0")


def encode_bytes(data: str) -> str:
    """Length-prefixed, right-padded encoding of a dynamic ``bytes`` value."""
    hex_data = _strip_0x(data)
    if len(hex_data) % 2 != 0:
        raise ValueError("Byte data must have an even-length hex string")
    data_len = len(hex_data) // 2
    padded_len = ((data_len + 31) // 32) * 32
    padding = "0" * ((padded_len - data_len) * 2)
    return encode_uint(data_len) + hex_data + padding


def selector(signature: str) -> str:
    return keccak(text=signature)[:4].hex()


def encode_call(signature: str, *words: str) -> str:
    """Encode a call whose arguments are all static 32-byte words."""
    return "0x" + selector(signature) + "".join(words)


# A bundler call: (to, data, value, skipRevert, callbackHash)
BundlerCall = Tuple[str, str, int, bool, str]


def _encode_bundler_call(call: BundlerCall) -> str:
    to, data, value, skip_revert, callback_hash = call
    head = (
        encode_address(to)
        + encode_uint(5 * 32)  # offset of `data` inside the tuple
        + encode_uint(value)
        + encode_bool(skip_revert)
        + encode_bytes32(callback_hash)
    )
    return head + encode_bytes(data)


def encode_bundler_multicall(signature: str, calls: Sequence[BundlerCall]) -> str:
    """Encode ``multicall(Call[])`` where every Call carries dynamic bytes."""
    encoded = [_encode_bundler_call(call) for call in calls]

    offsets: List[str] = []
    cursor = 32 * len(encoded)
    for item in encoded:
        offsets.append(encode_uint(cursor))
        cursor += len(item) // 2

    array = encode_uint(len(encoded)) + "".join(offsets) + "".join(encoded)
    return "0x" + selector(signature) + encode_uint(32) + array


def words(result: str) -> List[str]:
    data = _strip_0x(result or "")
    return [data[i:i + 64] for i in range(0, len(data), 64)]


def decode_uint(result: str) -> int:
    data = _strip_0x(result or "")
    if not data:
        raise ValueError("Empty call result")
    return int(data[:64], 16)


def decode_address(result: str) -> str:
    data = _strip_0x(result or "")
    if len(data) < 64:
        raise ValueError(f"Call result too short for an address: {result!r}")
    return "0x" + data[24:64]


def decode_string(result: str) -> str:
    """Decode a ``string`` return value, accepting legacy ``bytes32`` tokens."""
    data = _strip_0x(result or "")
    if len(data) == 64:
        return bytes.fromhex(data).rstrip(b"\x00").decode("utf-8", errors="ignore")

    chunks = words(data)
    if len(chunks) < 2:
        raise ValueError(f"Call result too short for a string: {result!r}")
    offset = int(chunks[0], 16) // 32
    length = int(chunks[offset], 16)
    start = (offset + 1) * 64
    raw = data[start:start + length * 2]
    return bytes.fromhex(raw).decode("utf-8", errors="ignore")


def split_signature(signature: str) -> Tuple[int, str, str]:
    """Split a 65-byte ``r || s || v`` signature into ``(v, r, s)``."""
    data = _strip_0x(signature)
    if len(data) != 130:
        raise ValueError("Signature must be 65 bytes")
    r = data[:64]
    s = data[64:128]
    v = int(data[128:130], 16)
    if v < 27:
        v += 27
    return v, r, s
