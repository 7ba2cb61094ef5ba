"""Reading and writing of NumPy ``.npy`` files and uncompressed ``.npz`` archives."""

from __future__ import annotations

import ast
import math
import os
import struct
import sys
import zlib
from dataclasses import dataclass
from typing import BinaryIO

import numpy as np

MAGIC = b"\x93NUMPY"

_LOCAL_SIGNATURE = b"\x03\x04"
_ZIP64_MARKER = 0xFFFFFFFF
_ZIP64_EXTRA_TAG = 0x0001
_SUPPORTED_KINDS = "fiubc"


class NpyFormatError(ValueError):
    """Raised when an ``.npy`` file or ``.npz`` archive cannot be understood."""


@dataclass(frozen=True)
class NpyHeader:
    """The parsed header of an ``.npy`` payload."""

    descr: str
    fortran_order: bool
    shape: tuple[int, ...]
    header_size: int

    @property
    def word_size(self) -> int:
        return np.dtype(self.descr).itemsize

    @property
    def num_vals(self) -> int:
        return math.prod(self.shape)

    @property
    def data_size(self) -> int:
        return self.num_vals * self.word_size


@dataclass(frozen=True)
class NpyArray:
    """Raw array data together with the layout described by its header."""

    descr: str
    shape: tuple[int, ...]
    fortran_order: bool
    data: bytes

    @property
    def word_size(self) -> int:
        return np.dtype(self.descr).itemsize

    @property
    def num_vals(self) -> int:
        return math.prod(self.shape)

    def as_array(self) -> np.ndarray:
        """Return the data as a writable NumPy array of the stored shape."""
        flat = np.frombuffer(self.data, dtype=np.dtype(self.descr))
        order = "F" if self.fortran_order else "C"
        return flat.reshape(self.shape, order=order).copy()

    def num_bytes(self) -> int:
        return len(self.data)


def _read_exact(fp: BinaryIO, size: int, what: str) -> bytes:
    chunk = fp.read(size)
    if len(chunk) != size:
        raise NpyFormatError(f"failed read of {what}: wanted {size} bytes, got {len(chunk)}")
    return chunk


def _parse_header_text(text: str, header_size: int) -> NpyHeader:
    try:
        fields = ast.literal_eval(text.strip())
    except (ValueError, SyntaxError) as exc:
        raise NpyFormatError(f"malformed npy header: {text!r}") from exc
    if not isinstance(fields, dict):
        raise NpyFormatError(f"npy header is not a dictionary: {text!r}")
    for key in ("descr", "fortran_order", "shape"):
        if key not in fields:
            raise NpyFormatError(f"failed to find header keyword: {key!r}")

    descr = fields["descr"]
    if not isinstance(descr, str) or len(descr) < 2:
        raise NpyFormatError(f"unsupported descr: {descr!r}")
    if descr[0] not in "<|":
        raise NpyFormatError(f"only little-endian data is supported, got descr {descr!r}")
    try:
        np.dtype(descr)
    except TypeError as exc:
        raise NpyFormatError(f"unknown descr: {descr!r}") from exc

    shape = fields["shape"]
    if not isinstance(shape, tuple) or not all(
        isinstance(n, int) and n >= 0 for n in shape
    ):
        raise NpyFormatError(f"invalid shape in npy header: {shape!r}")

    return NpyHeader(
        descr=descr,
        fortran_order=bool(fields["fortran_order"]),
        shape=shape,
        header_size=header_size,
    )


def parse_npy_header(buffer: bytes) -> NpyHeader:
    """Parse the header at the start of an in-memory ``.npy`` payload."""
    buffer = bytes(buffer)
    if len(buffer) < 10 or not buffer.startswith(MAGIC):
        raise NpyFormatError("missing npy magic string")
    major = buffer[6]
    if major == 1:
        (length,) = struct.unpack_from("<H", buffer, 8)
        prefix = 10
    elif major in (2, 3):
        if len(buffer) < 12:
            raise NpyFormatError("truncated npy preamble")
        (length,) = struct.unpack_from("<I", buffer, 8)
        prefix = 12
    else:
        raise NpyFormatError(f"unsupported npy format version {major}")
    end = prefix + length
    if len(buffer) < end:
        raise NpyFormatError("truncated npy header")
    encoding = "utf-8" if major == 3 else "latin1"
    return _parse_header_text(buffer[prefix:end].decode(encoding), end)


def read_npy_header(fp: BinaryIO) -> NpyHeader:
    """Read and parse an ``.npy`` header from a binary stream, leaving it at the data."""
    preamble = _read_exact(fp, 10, "npy preamble")
    if not preamble.startswith(MAGIC):
        raise NpyFormatError("missing npy magic string")
    major = preamble[6]
    if major == 1:
        (length,) = struct.unpack_from("<H", preamble, 8)
    elif major in (2, 3):
        preamble += _read_exact(fp, 2, "npy preamble")
        (length,) = struct.unpack_from("<I", preamble, 8)
    else:
        raise NpyFormatError(f"unsupported npy format version {major}")
    body = _read_exact(fp, length, "npy header")
    if not body.endswith(b"\n"):
        raise NpyFormatError("npy header does not end with a newline")
    return parse_npy_header(preamble + body)


def parse_zip_footer(fp: BinaryIO) -> tuple[int, int, int]:
    """Return ``(records, central_directory_size, central_directory_offset)``."""
    size = fp.seek(0, os.SEEK_END)
    if size < 22:
        raise NpyFormatError("file too small to hold a zip footer")
    fp.seek(size - 22)
    footer = _read_exact(fp, 22, "zip footer")
    (
        _signature,
        disk_no,
        disk_start,
        records_on_disk,
        records,
        directory_size,
        directory_offset,
        comment_len,
    ) = struct.unpack("<IHHHHIIH", footer)
    if disk_no != 0 or disk_start != 0:
        raise NpyFormatError("multi-disk zip archives are not supported")
    if records_on_disk != records:
        raise NpyFormatError("zip footer record counts disagree")
    if comment_len != 0:
        raise NpyFormatError("zip archives with a comment are not supported")
    return records, directory_size, directory_offset


def create_npy_header(dtype, shape) -> bytes:
    """Build a version 1.0 ``.npy`` header for C-ordered data of native byte order."""
    dtype = np.dtype(dtype)
    shape = tuple(int(n) for n in shape)
    if not shape:
        raise ValueError("shape must have at least one dimension")
    if dtype.kind not in _SUPPORTED_KINDS:
        raise ValueError(f"unsupported dtype {dtype}")
    order = "<" if sys.byteorder == "little" else ">"
    dims = ", ".join(str(n) for n in shape)
    if len(shape) == 1:
        dims += ","
    text = (
        f"{{'descr': '{order}{dtype.kind}{dtype.itemsize}', "
        f"'fortran_order': False, 'shape': ({dims}), }}"
    )
    # Pad so that preamble plus dictionary is a multiple of 16 bytes.
    padding = 16 - (10 + len(text)) % 16
    body = (text + " " * (padding - 1) + "\n").encode("latin1")
    return MAGIC + b"\x01\x00" + struct.pack("<H", len(body)) + body


def _read_npy_stream(fp: BinaryIO) -> NpyArray:
    header = read_npy_header(fp)
    data = _read_exact(fp, header.data_size, "npy data")
    return NpyArray(header.descr, header.shape, header.fortran_order, data)


def npy_load(path) -> NpyArray:
    """Load an ``.npy`` file."""
    with open(path, "rb") as fp:
        return _read_npy_stream(fp)


def _zip64_sizes(extra: bytes, compressed: int, uncompressed: int) -> tuple[int, int]:
    if _ZIP64_MARKER not in (compressed, uncompressed):
        return compressed, uncompressed
    pos = 0
    while pos + 4 <= len(extra):
        tag, size = struct.unpack_from("<HH", extra, pos)
        if tag == _ZIP64_EXTRA_TAG:
            values = iter(struct.unpack_from(f"<{size // 8}Q", extra, pos + 4))
            try:
                if uncompressed == _ZIP64_MARKER:
                    uncompressed = next(values)
                if compressed == _ZIP64_MARKER:
                    compressed = next(values)
            except StopIteration as exc:
                raise NpyFormatError("truncated zip64 extra field") from exc
            return compressed, uncompressed
        pos += 4 + size
    raise NpyFormatError("zip64 sizes announced but no zip64 extra field found")


def _read_entry(fp: BinaryIO, method: int, compressed: int) -> NpyArray:
    if method == 0:
        return _read_npy_stream(fp)
    if method != 8:
        raise NpyFormatError(f"unsupported zip compression method {method}")
    raw = _read_exact(fp, compressed, "compressed npz entry")
    try:
        payload = zlib.decompressobj(-zlib.MAX_WBITS).decompress(raw)
    except zlib.error as exc:
        raise NpyFormatError("corrupt compressed npz entry") from exc
    header = parse_npy_header(payload)
    if len(payload) < header.header_size + header.data_size:
        raise NpyFormatError("compressed npz entry is truncated")
    data = payload[len(payload) - header.data_size :]
    return NpyArray(header.descr, header.shape, header.fortran_order, data)


def npz_load(path, varname=None):
    """Load every array of an ``.npz`` archive as a dict, or only ``varname``."""
    arrays: dict[str, NpyArray] = {}
    with open(path, "rb") as fp:
        while True:
            local = fp.read(30)
            if len(local) >= 4 and local[2:4] != _LOCAL_SIGNATURE:
                break
            if len(local) != 30:
                raise NpyFormatError("failed read of zip local header")
            (method,) = struct.unpack_from("<H", local, 8)
            compressed, uncompressed, name_len, extra_len = struct.unpack_from(
                "<IIHH", local, 18
            )
            raw_name = _read_exact(fp, name_len, "zip entry name")
            name = raw_name.decode("utf-8").removesuffix(".npy")
            extra = _read_exact(fp, extra_len, "zip extra field")
            compressed, uncompressed = _zip64_sizes(extra, compressed, uncompressed)

            if varname is None:
                arrays[name] = _read_entry(fp, method, compressed)
            elif name == varname:
                return _read_entry(fp, method, compressed)
            else:
                fp.seek(compressed, os.SEEK_CUR)

    if varname is not None:
        raise KeyError(f"variable {varname!r} not found in {os.fspath(path)}")
    return arrays


def _check_mode(mode: str) -> None:
    if mode not in ("w", "a"):
        raise ValueError(f"mode must be 'w' or 'a', got {mode!r}")


def _native_array(data) -> np.ndarray:
    arr = np.asarray(data)
    if arr.ndim == 0:
        raise ValueError("cannot save a zero-dimensional array")
    if arr.dtype.kind not in _SUPPORTED_KINDS:
        raise ValueError(f"unsupported dtype {arr.dtype}")
    return np.ascontiguousarray(arr, dtype=arr.dtype.newbyteorder("="))


def npy_save(path, data, mode="w") -> None:
    """Write ``data`` to an ``.npy`` file; with mode ``'a'`` extend along the first axis."""
    _check_mode(mode)
    arr = _native_array(data)
    shape = arr.shape
    existing = b""

    if mode == "a" and os.path.exists(path):
        with open(path, "rb") as fp:
            header = read_npy_header(fp)
            existing = _read_exact(fp, header.data_size, "npy data")
        if header.fortran_order:
            raise NpyFormatError(f"cannot append to Fortran-ordered array in {os.fspath(path)}")
        if header.word_size != arr.dtype.itemsize:
            raise ValueError(
                f"{os.fspath(path)} has word size {header.word_size} "
                f"but appended data has word size {arr.dtype.itemsize}"
            )
        if len(header.shape) != arr.ndim:
            raise ValueError(f"appending misdimensioned data to {os.fspath(path)}")
        if header.shape[1:] != shape[1:]:
            raise ValueError(f"appending misshaped data to {os.fspath(path)}")
        shape = (header.shape[0] + shape[0], *shape[1:])

    with open(path, "wb") as fp:
        fp.write(create_npy_header(arr.dtype, shape))
        fp.write(existing)
        fp.write(arr.tobytes())


def npz_save(zip_path, name, data, mode="w") -> None:
    """Store ``data`` as ``name.npy`` in an uncompressed zip; mode ``'a'`` adds to it."""
    _check_mode(mode)
    arr = _native_array(data)
    entry = f"{name}.npy".encode("utf-8")
    records = 0
    offset = 0
    central = b""
    appending = mode == "a" and os.path.exists(zip_path)

    with open(zip_path, "r+b" if appending else "wb") as fp:
        if appending:
            records, directory_size, offset = parse_zip_footer(fp)
            fp.seek(offset)
            central = fp.read(directory_size)
            if len(central) != directory_size:
                raise NpyFormatError("header read error while adding to existing zip")
            fp.seek(offset)

        npy_header = create_npy_header(arr.dtype, arr.shape)
        payload = arr.tobytes()
        nbytes = len(npy_header) + len(payload)
        crc = zlib.crc32(payload, zlib.crc32(npy_header))

        local = (
            struct.pack(
                "<4sHHHHHIIIHH",
                b"PK\x03\x04",
                20,  # version needed to extract
                0,  # flags
                0,  # stored, no compression
                0,  # modification time
                0,  # modification date
                crc,
                nbytes,
                nbytes,
                len(entry),
                0,  # extra field length
            )
            + entry
        )
        central += (
            b"PK\x01\x02"
            + struct.pack("<H", 20)
            + local[4:30]
            + struct.pack("<HHHII", 0, 0, 0, 0, offset)
            + entry
        )
        footer = struct.pack(
            "<4sHHHHIIH",
            b"PK\x05\x06",
            0,
            0,
            records + 1,
            records + 1,
            len(central),
            offset + len(local) + nbytes,
            0,
        )

        fp.write(local)
        fp.write(npy_header)
        fp.write(payload)
        fp.write(central)
        fp.write(footer)
        fp.truncate()