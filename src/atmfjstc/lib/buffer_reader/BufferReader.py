"""
This module contains the `BufferReader` class, a cursor over an in-memory binary buffer that offers functions for
extracting binary-encoded ints, floats, strings and arrays thereof.
"""

import logging
import struct

import typing
from typing import Any, Callable, List, Optional, TypeVar, Iterator
from collections import OrderedDict
from contextlib import contextmanager
from os import SEEK_SET, SEEK_CUR, SEEK_END

from atmfjstc.lib.ez_repr import EZRepr


LOG = logging.getLogger(__name__)

T = TypeVar('T')

COUNT_PREFIX_FORMAT = 'i'

MAX_VAR_INT_BYTES = 10

_SCALAR_NAMES = {
    '?': 'bool',
    'b': 'int8',
    'B': 'uint8',
    'h': 'int16',
    'H': 'uint16',
    'i': 'int32',
    'I': 'uint32',
    'q': 'int64',
    'Q': 'uint64',
    'e': 'half',
    'f': 'float',
    'd': 'double',
}

_SCALAR_STRUCTS = {
    little_endian: {code: struct.Struct(prefix + code) for code in _SCALAR_NAMES}
    for little_endian, prefix in ((True, '<'), (False, '>'))
}


class BufferReader(EZRepr):
    """
    This class wraps an in-memory binary buffer and offers functions for extracting binary-encoded bools, ints, floats,
    strings and homogeneous arrays of these, advancing a cursor as it goes.

    The buffer is borrowed, not copied: the reader keeps a flat byte view over whatever object it was given (`bytes`,
    `bytearray`, `memoryview`, `mmap` etc.). If the caller modifies a mutable buffer while the reader is in use, the
    results of subsequent reads reflect the modified data.

    All reads are bounds-checked. A read that fails leaves the position where it was before the call, with one
    exception: an array read that runs out of data part-way stays positioned after the last whole element that could be
    decoded (and after the count prefix, if one was read). Callers that need all-or-nothing behavior for arrays should
    save `position` beforehand and restore it on error.

    Instances are not thread-safe.
    """

    _obj: Any
    _view: memoryview
    _size: int
    _position: int
    _little_endian: bool

    def __init__(self, buffer: Any, little_endian: bool = True, position: int = 0):
        self._obj = buffer
        self._view = _parse_main_input_arg(buffer)
        self._size = len(self._view)
        self._little_endian = bool(little_endian)

        self._position = self._validate_position(position)

        LOG.debug(
            "Created reader over %d bytes at position %d (%s-endian)",
            self._size, self._position, 'little' if self._little_endian else 'big'
        )

    @property
    def obj(self) -> Any:
        """The object originally passed in as the buffer."""
        return self._obj

    @property
    def size(self) -> int:
        return self._size

    @property
    def little_endian(self) -> bool:
        return self._little_endian

    @property
    def position(self) -> int:
        return self._position

    @position.setter
    def position(self, value: int):
        self._position = self._validate_position(value)

    def _validate_position(self, position: int) -> int:
        if isinstance(position, bool) or not isinstance(position, int):
            raise TypeError(f"Position must be an int, got {type(position).__name__}")
        if not (0 <= position <= self._size):
            raise BufferReaderBadPositionError(position, self._size)

        return position

    def tell(self) -> int:
        return self._position

    def bytes_remaining(self) -> int:
        return self._size - self._position

    def seek(self, offset: int, whence: int = SEEK_SET) -> int:
        """
        Moves the cursor, in the same manner as `seek()` on a file object.

        Unlike a file object, seeking past the end (or before the start) of the buffer is not allowed and will raise a
        `BufferReaderBadPositionError`.

        Returns:
            The new position.
        """

        if whence == SEEK_SET:
            base = 0
        elif whence == SEEK_CUR:
            base = self._position
        elif whence == SEEK_END:
            base = self._size
        else:
            raise ValueError(f"Invalid whence value: {whence!r}")

        self.position = base + offset

        return self._position

    def skip_bytes(self, n_bytes: int, meaning: Optional[str] = None):
        """
        Skips over a number of bytes, ignoring the data. The bytes MUST be present.

        Raises:
            BufferReaderReadPastEndError: If fewer than `n_bytes` remain. The position is not changed in that case.
        """

        if n_bytes < 0:
            raise ValueError("Number of bytes to skip must be non-negative")

        self._require_available(n_bytes, meaning or 'skipped data')
        self._position += n_bytes

    def align(self, boundary: int = 4) -> int:
        """
        Advances the cursor to the next multiple of `boundary`, counted from the start of the buffer.

        The skipped bytes are not checked in any way. If the buffer ends before the boundary is reached, the cursor
        stops at the end.

        Returns:
            The new position.
        """

        if boundary < 1:
            raise ValueError(f"Alignment boundary must be strictly positive (is: {boundary})")

        self._position = min(self._position + (-self._position) % boundary, self._size)

        return self._position

    def read_bytes(self, n_bytes: int, meaning: Optional[str] = None) -> bytes:
        """
        Reads exactly `n_bytes` from the buffer.

        Args:
            n_bytes: The amount of bytes to read.
            meaning: An indication as to the meaning of the data being read (e.g. "user ID"). It is used in the text
                of any exceptions that may be thrown.

        Returns:
            The data, as a `bytes` object `n_bytes` in length.

        Raises:
            BufferReaderReadPastEndError: If fewer than `n_bytes` remain.
        """

        if n_bytes < 0:
            raise ValueError("The number of bytes to read cannot be negative")

        self._require_available(n_bytes, meaning or 'bytes')

        data = self._view[self._position:self._position + n_bytes].tobytes()
        self._position += n_bytes

        return data

    def expect_magic(self, magic: bytes, meaning: Optional[str] = None):
        """
        Verifies that a specific bytes sequence ("magic") follows in the buffer, and skips over it.

        Raises:
            BufferReaderWrongMagicError: If the data does not match the expected sequence. The position is not changed.
            BufferReaderReadPastEndError: If there is not enough data left for the full magic.
        """

        meaning = meaning or 'magic'

        self._require_available(len(magic), meaning)

        found = self._view[self._position:self._position + len(magic)].tobytes()
        if found != magic:
            raise BufferReaderWrongMagicError(self._position, magic, found, meaning)

        self._position += len(magic)

    def read_bool(self, meaning: Optional[str] = None) -> bool:
        """Reads a single byte and interprets it as a bool (any non-zero value is True)."""
        return self._read_scalar('?', meaning)

    def read_int8(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('b', meaning)

    def read_uint8(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('B', meaning)

    def read_int16(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('h', meaning)

    def read_uint16(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('H', meaning)

    def read_int32(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('i', meaning)

    def read_uint32(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('I', meaning)

    def read_int64(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('q', meaning)

    def read_uint64(self, meaning: Optional[str] = None) -> int:
        return self._read_scalar('Q', meaning)

    def read_half(self, meaning: Optional[str] = None) -> float:
        """Reads an IEEE-754 half precision (16-bit) float."""
        return self._read_scalar('e', meaning)

    def read_float(self, meaning: Optional[str] = None) -> float:
        return self._read_scalar('f', meaning)

    def read_double(self, meaning: Optional[str] = None) -> float:
        return self._read_scalar('d', meaning)

    def read_var_int(self, meaning: Optional[str] = None) -> int:
        """
        Reads an unsigned variable-length integer, stored 7 bits per byte, least significant group first. The high bit
        of each byte signals that another byte follows.

        Raises:
            BufferReaderReadPastEndError: If the data ends before the last byte of the varint. The position is not
                changed in that case.
            BufferReaderVarIntTooLongError: If the varint goes on for more than `MAX_VAR_INT_BYTES` bytes (i.e. does
                not fit in 64 bits). The position is not changed in that case either.
        """

        meaning = meaning or 'varint'

        with self._restore_position_on_error() as original_pos:
            value = 0

            for shift in range(0, 7 * MAX_VAR_INT_BYTES, 7):
                byte = self.read_uint8(meaning)
                value |= (byte & 0x7F) << shift

                if not (byte & 0x80):
                    return value

            raise BufferReaderVarIntTooLongError(original_pos, MAX_VAR_INT_BYTES, meaning)

    def read_bool_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[bool]:
        """
        Reads an array of bools.

        Like all other array functions, this reads a signed 32-bit element count first, unless `count` is provided
        explicitly. The elements then follow, back to back.

        Args:
            count: The number of elements, if known in advance. The count prefix is not read in that case.
            meaning: An indication as to the meaning of the data being read. It is used in the text of any exceptions
                that may be thrown.

        Returns:
            A list with the decoded elements, in the order they occur in the data.

        Raises:
            BufferReaderNegativeCountError: If the count prefix is negative.
            BufferReaderReadPastEndError: If the data ends before all the elements could be read. Note that the
                position will then be just past the last element that could be read completely.
        """
        return self._read_scalar_array('?', count, meaning)

    def read_int8_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('b', count, meaning)

    def read_uint8_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('B', count, meaning)

    def read_int16_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('h', count, meaning)

    def read_uint16_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('H', count, meaning)

    def read_int32_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('i', count, meaning)

    def read_uint32_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('I', count, meaning)

    def read_int64_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('q', count, meaning)

    def read_uint64_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[int]:
        return self._read_scalar_array('Q', count, meaning)

    def read_half_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[float]:
        return self._read_scalar_array('e', count, meaning)

    def read_float_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[float]:
        return self._read_scalar_array('f', count, meaning)

    def read_double_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[float]:
        return self._read_scalar_array('d', count, meaning)

    def read_null_terminated_bytes(
        self, meaning: Optional[str] = None, safety_limit: Optional[int] = None, buffer_size: int = 65536
    ) -> bytes:
        """
        Reads a null-terminated byte string from the buffer.

        Args:
            meaning: An indication as to the meaning of the data being read (e.g. "file name"). It is used in the text
                of any exceptions that may be thrown.
            safety_limit: The maximum expected size of the string, including the null terminator. The function will
                raise an exception if the null terminator is not found within that many bytes. Use None (the default)
                to search all the way to the end of the buffer.
            buffer_size: The size of the chunks in which the buffer is scanned for the terminator.

        Returns:
            The byte string, as a `bytes` value, without the null terminator. The position is moved past the
            terminator.

        Raises:
            BufferReaderNullStrReadPastEndError: Raised if we reached the end of the data without ever encountering the
                null terminator.
            BufferReaderNullStrTooLongError: Raised if the string is longer than the `safety_limit`. Note that this
                is considered a format error.
        """

        if (safety_limit is not None) and safety_limit < 1:
            raise ValueError(f"safety_limit must be strictly positive! (is: {safety_limit})")
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be strictly positive! (is: {buffer_size})")

        original_pos = self._position
        scan_end = self._size if safety_limit is None else min(self._size, original_pos + safety_limit)

        null_pos = self._find_null(original_pos, scan_end, buffer_size)

        if null_pos is None:
            if scan_end < self._size:
                raise BufferReaderNullStrTooLongError(original_pos, safety_limit, meaning)

            raise BufferReaderNullStrReadPastEndError(original_pos, meaning)

        data = self._view[original_pos:null_pos].tobytes()
        self._position = null_pos + 1

        return data

    def read_string_c(
        self, meaning: Optional[str] = None, safety_limit: Optional[int] = None, buffer_size: int = 65536
    ) -> str:
        """
        Reads a null-terminated UTF-8 string. See `read_null_terminated_bytes` for the parameters.

        Raises:
            BufferReaderEncodingError: If the string is not valid UTF-8. The position is not changed in that case.
        """

        with self._restore_position_on_error() as original_pos:
            data = self.read_null_terminated_bytes(meaning, safety_limit=safety_limit, buffer_size=buffer_size)

            return _decode_utf8(data, original_pos, meaning)

    def read_length_prefixed_bytes(self, meaning: Optional[str] = None) -> bytes:
        """
        Reads a byte string preceded by its length, stored as a signed 32-bit int.

        Raises:
            BufferReaderNegativeCountError: If the length is negative.
            BufferReaderReadPastEndError: If the data ends before the whole string could be read.

        In both cases, the position is restored to the start of the length prefix.
        """

        with self._restore_position_on_error():
            length = self._read_count(None, meaning or 'byte string')

            return self.read_bytes(length, meaning)

    def read_string(self, length: Optional[int] = None, meaning: Optional[str] = None) -> str:
        """
        Reads a UTF-8 string of a given length.

        Args:
            length: The length of the string, in bytes. If not provided, the length is read from the data as a signed
                32-bit int prefix.
            meaning: An indication as to the meaning of the data being read (e.g. "user name"). It is used in the text
                of any exceptions that may be thrown.

        Raises:
            BufferReaderNegativeCountError: If the length prefix is negative.
            BufferReaderReadPastEndError: If the data ends before the whole string could be read.
            BufferReaderEncodingError: If the string is not valid UTF-8.

        In all cases above, the position is restored to where it was before the call.
        """

        if (length is not None) and length < 0:
            raise ValueError(f"String length cannot be negative (is: {length})")

        meaning = meaning or 'string'

        with self._restore_position_on_error():
            if length is None:
                length = self._read_count(None, meaning)

            self._require_available(length, meaning)

            start_pos = self._position
            text = _decode_utf8(self._view[start_pos:start_pos + length], start_pos, meaning)

            self._position += length

        return text

    def read_string_aligned(self, meaning: Optional[str] = None) -> str:
        """
        Reads a length-prefixed UTF-8 string, then skips over the padding that brings the record (prefix included) to a
        multiple of 4 bytes. The padding bytes are not checked.

        If the buffer ends before the padding is complete, the position stops at the end of the buffer.
        """

        start_pos = self._position

        text = self.read_string(meaning=meaning or 'aligned string')

        padded_pos = self._position + (start_pos - self._position) % 4
        if padded_pos > self._size:
            LOG.debug(
                "Aligned string at position %d is missing %d padding byte(s) at the end of the buffer",
                start_pos, padded_pos - self._size
            )
            padded_pos = self._size

        self._position = padded_pos

        return text

    def read_string_c_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[str]:
        return self._read_array(self.read_string_c, count, meaning or 'null-terminated string array')

    def read_string_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[str]:
        return self._read_array(self.read_string, count, meaning or 'string array')

    def read_string_aligned_array(self, count: Optional[int] = None, meaning: Optional[str] = None) -> List[str]:
        return self._read_array(self.read_string_aligned, count, meaning or 'aligned string array')

    def _require_available(self, n_bytes: int, meaning: Optional[str]):
        if self._position + n_bytes > self._size:
            raise BufferReaderReadPastEndError(self._position, n_bytes, self._size - self._position, meaning)

    @contextmanager
    def _restore_position_on_error(self) -> Iterator[int]:
        original_pos = self._position

        try:
            yield original_pos
        except BufferReaderError:
            self._position = original_pos
            raise

    def _read_scalar(self, type_code: str, meaning: Optional[str]) -> Any:
        unpacker = _SCALAR_STRUCTS[self._little_endian][type_code]

        self._require_available(unpacker.size, meaning or _SCALAR_NAMES[type_code])

        value, = unpacker.unpack_from(self._view, self._position)
        self._position += unpacker.size

        return value

    def _read_count(self, count: Optional[int], meaning: str) -> int:
        if count is not None:
            if count < 0:
                raise ValueError(f"Element count cannot be negative (is: {count})")

            return count

        original_pos = self._position

        count = self._read_scalar(COUNT_PREFIX_FORMAT, f"length of {meaning}")
        if count < 0:
            self._position = original_pos
            raise BufferReaderNegativeCountError(original_pos, count, meaning)

        return count

    def _read_scalar_array(self, type_code: str, count: Optional[int], meaning: Optional[str]) -> list:
        meaning = meaning or f"{_SCALAR_NAMES[type_code]} array"

        n_items = self._read_count(count, meaning)

        unpacker = _SCALAR_STRUCTS[self._little_endian][type_code]
        n_whole = min(n_items, self.bytes_remaining() // unpacker.size)
        end_pos = self._position + n_whole * unpacker.size

        values = [value for value, in unpacker.iter_unpack(self._view[self._position:end_pos])]
        self._position = end_pos

        if n_whole < n_items:
            LOG.debug(
                "Array read for %s stopped after %d of %d elements at position %d",
                meaning, n_whole, n_items, self._position
            )
            raise BufferReaderReadPastEndError(
                self._position, unpacker.size, self.bytes_remaining(), f"element #{n_whole} of {meaning}"
            )

        return values

    def _read_array(self, read_item: Callable[..., T], count: Optional[int], meaning: str) -> List[T]:
        n_items = self._read_count(count, meaning)

        items = []

        try:
            for index in range(n_items):
                items.append(read_item(meaning=f"element #{index} of {meaning}"))
        except BufferReaderError:
            LOG.debug(
                "Array read for %s stopped after %d of %d elements at position %d",
                meaning, len(items), n_items, self._position
            )
            raise

        return items

    def _find_null(self, start: int, end: int, chunk_size: int) -> Optional[int]:
        for chunk_start in range(start, end, chunk_size):
            chunk_end = min(chunk_start + chunk_size, end)

            offset = self._view[chunk_start:chunk_end].tobytes().find(b'\x00')
            if offset != -1:
                return chunk_start + offset

        return None

    def _ez_repr_fields(self) -> typing.OrderedDict[str, Any]:
        return OrderedDict(size=self._size, position=self._position, little_endian=self._little_endian)


def _parse_main_input_arg(input_: Any) -> memoryview:
    if isinstance(input_, str):
        raise TypeError("BufferReader works on binary data, not text")

    try:
        view = memoryview(input_)
    except TypeError:
        raise TypeError(
            "Input to BufferReader must be bytes, a bytearray or another object supporting the buffer protocol"
        ) from None

    if not view.c_contiguous:
        raise TypeError("BufferReader requires a contiguous buffer (e.g. not a strided memoryview slice)")

    return view.cast('B')


def _decode_utf8(data: Any, position: int, meaning: Optional[str]) -> str:
    try:
        return str(data, 'utf-8')
    except UnicodeDecodeError as e:
        raise BufferReaderEncodingError(position, e.reason, meaning) from e


class BufferReaderError(Exception):
    """
    Base class for all the errors raised by `BufferReader` when the data cannot be decoded as requested.

    The reader remains usable after such an error.
    """


class BufferReaderBadPositionError(BufferReaderError, ValueError):
    position: int
    size: int

    def __init__(self, position: int, size: int):
        self.position = position
        self.size = size

        super().__init__(f"Position {position} is outside the buffer (must be between 0 and {size})")


class BufferReaderOutOfBoundsError(BufferReaderError):
    """
    Signals that a read would go past the end of the buffer.
    """


class BufferReaderReadPastEndError(BufferReaderOutOfBoundsError):
    position: int
    expected_length: int
    actual_length: int
    meaning: Optional[str]

    def __init__(self, position: int, expected_length: int, actual_length: int, meaning: Optional[str]):
        self.position = position
        self.expected_length = expected_length
        self.actual_length = actual_length
        self.meaning = meaning

        super().__init__(
            f"At position {position}, expected {expected_length} "
            f"bytes{f' for {meaning}' if meaning is not None else ''}"
            f", but only {actual_length} remain"
        )


class BufferReaderNullStrReadPastEndError(BufferReaderOutOfBoundsError):
    position: int
    meaning: Optional[str]

    def __init__(self, position: int, meaning: Optional[str]):
        self.position = position
        self.meaning = meaning

        super().__init__(
            f"At position {position}, null-terminated string{f' for {meaning}' if meaning is not None else ''} "
            f"starts but end of the data occurs without the null terminator being found"
        )


class BufferReaderFormatError(BufferReaderError):
    """
    Signals situations where the data does not match the expected format.
    """


class BufferReaderNegativeCountError(BufferReaderFormatError):
    position: int
    count: int
    meaning: Optional[str]

    def __init__(self, position: int, count: int, meaning: Optional[str]):
        self.position = position
        self.count = count
        self.meaning = meaning

        super().__init__(
            f"At position {position}, the length{f' of {meaning}' if meaning is not None else ''} is negative ({count})"
        )


class BufferReaderEncodingError(BufferReaderFormatError):
    position: int
    reason: str
    meaning: Optional[str]

    def __init__(self, position: int, reason: str, meaning: Optional[str]):
        self.position = position
        self.reason = reason
        self.meaning = meaning

        super().__init__(f"At position {position}, {meaning or 'string'} is not valid UTF-8 ({reason})")


class BufferReaderNullStrTooLongError(BufferReaderFormatError):
    position: int
    max_length: int
    meaning: Optional[str]

    def __init__(self, position: int, max_length: int, meaning: Optional[str]):
        self.position = position
        self.max_length = max_length
        self.meaning = meaning

        super().__init__(
            f"At position {position}, null-terminated string{f' for {meaning}' if meaning is not None else ''} "
            f"exceeds maximum length of {max_length}, possibly due to corrupt data"
        )


class BufferReaderWrongMagicError(BufferReaderFormatError):
    position: int
    expected_magic: bytes
    found_magic: bytes
    meaning: Optional[str]

    def __init__(self, position: int, expected_magic: bytes, found_magic: bytes, meaning: Optional[str]):
        self.position = position
        self.expected_magic = expected_magic
        self.found_magic = found_magic
        self.meaning = meaning

        super().__init__(
            f"At position {position}, expected {meaning or 'magic'} 0x{expected_magic.hex()}, but found "
            f"0x{found_magic.hex()}"
        )


class BufferReaderVarIntTooLongError(BufferReaderFormatError):
    position: int
    max_length: int
    meaning: Optional[str]

    def __init__(self, position: int, max_length: int, meaning: Optional[str]):
        self.position = position
        self.max_length = max_length
        self.meaning = meaning

        super().__init__(
            f"At position {position}, {meaning or 'varint'} continues past the maximum of {max_length} bytes, "
            f"possibly due to corrupt data"
        )
