"""Binary serialisation of the values exchanged between peers (big-endian, length-prefixed)."""

from __future__ import annotations

import struct
from typing import Iterable, Union

_NULL_LENGTH = 0xFFFFFFFF
_U32 = struct.Struct(">I")
_U16 = struct.Struct(">H")
_I64 = struct.Struct(">q")


class IncompleteData(Exception):
    """Raised when the buffer ends before the value being read is complete."""


class StreamWriter:
    """Accumulates serialised values in a byte buffer."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def _pack(self, packer: struct.Struct, value: int) -> "StreamWriter":
        try:
            self._buffer += packer.pack(value)
        except struct.error as exc:
            raise ValueError(f"value out of range: {value!r}") from exc
        return self

    def write_string(self, value: str) -> "StreamWriter":
        encoded = value.encode("utf-16-be", "surrogatepass")
        self._pack(_U32, len(encoded))
        self._buffer += encoded
        return self

    def write_uint16(self, value: int) -> "StreamWriter":
        return self._pack(_U16, value)

    def write_int64(self, value: int) -> "StreamWriter":
        return self._pack(_I64, value)

    def write_bytes(self, value: Union[bytes, bytearray, memoryview]) -> "StreamWriter":
        data = bytes(value)
        self._pack(_U32, len(data))
        self._buffer += data
        return self

    def write_string_list(self, values: Iterable[str]) -> "StreamWriter":
        items = list(values)
        self._pack(_U32, len(items))
        for item in items:
            self.write_string(item)
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


class StreamReader:
    """Reads serialised values from a byte buffer, front to back."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]) -> None:
        self._data = bytes(data)
        self._pos = 0

    def _take(self, count: int) -> bytes:
        end = self._pos + count
        if end > len(self._data):
            raise IncompleteData(f"need {count} bytes at offset {self._pos}, have {len(self._data) - self._pos}")
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def _unpack(self, packer: struct.Struct) -> int:
        return packer.unpack(self._take(packer.size))[0]

    def _sized(self) -> bytes:
        length = self._unpack(_U32)
        if length == _NULL_LENGTH:
            return b""
        return self._take(length)

    def read_string(self) -> str:
        start = self._pos
        raw = self._sized()
        if len(raw) % 2:
            self._pos = start
            raise ValueError("string data has an odd number of bytes")
        return raw.decode("utf-16-be", "surrogatepass")

    def read_uint16(self) -> int:
        return self._unpack(_U16)

    def read_int64(self) -> int:
        return self._unpack(_I64)

    def read_bytes(self) -> bytes:
        return self._sized()

    def read_string_list(self) -> list[str]:
        count = self._unpack(_U32)
        return [self.read_string() for _ in range(count)]

    def position(self) -> int:
        """Number of bytes consumed so far."""
        return self._pos