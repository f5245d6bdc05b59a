"""Little-endian record fields of the binary model format."""

from __future__ import annotations

import struct
from typing import BinaryIO

import numpy as np

from gpu_runtime.errors import ModelFormatError, TruncatedFileError

_INT32 = struct.Struct("<i")
_FLOAT32 = struct.Struct("<f")


def read_exact(stream: BinaryIO, nbytes: int) -> bytes:
    data = stream.read(nbytes)
    if data is None or len(data) < nbytes:
        got = 0 if data is None else len(data)
        raise TruncatedFileError("Unexpected end of model file", {"expected": nbytes, "got": got})
    return data


def read_int32(stream: BinaryIO) -> int:
    return _INT32.unpack(read_exact(stream, _INT32.size))[0]


def read_float32(stream: BinaryIO) -> float:
    return _FLOAT32.unpack(read_exact(stream, _FLOAT32.size))[0]


def read_count(stream: BinaryIO, field: str) -> int:
    """Read an int32 that sizes a later field; negative values are malformed."""
    value = read_int32(stream)
    if value < 0:
        raise ModelFormatError(f"Negative {field} in model file", {field: value})
    return value


def read_int32_array(stream: BinaryIO, count: int) -> np.ndarray:
    return np.frombuffer(read_exact(stream, 4 * count), dtype="<i4").astype(np.int32)


def read_float32_array(stream: BinaryIO, count: int) -> np.ndarray:
    return np.frombuffer(read_exact(stream, 4 * count), dtype="<f4").astype(np.float32)


def write_int32(stream: BinaryIO, value: int) -> None:
    stream.write(_INT32.pack(int(value)))


def write_float32(stream: BinaryIO, value: float) -> None:
    stream.write(_FLOAT32.pack(float(value)))


def write_int32_array(stream: BinaryIO, values) -> None:
    stream.write(np.asarray(values, dtype="<i4").tobytes())


def write_float32_array(stream: BinaryIO, values) -> None:
    stream.write(np.ascontiguousarray(values, dtype="<f4").tobytes())
