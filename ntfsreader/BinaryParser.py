#    This file is part of NtfsReader.
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.
import struct
from datetime import datetime, timedelta


FILETIME_EPOCH = datetime(1601, 1, 1, 0, 0, 0)


def align(offset, alignment):
    """
    Return the offset aligned to the nearest greater given alignment
    Arguments:
    - `offset`: An integer
    - `alignment`: An integer
    """
    if offset % alignment == 0:
        return offset
    return offset + (alignment - (offset % alignment))


def parse_filetime(qword):
    """
    Convert a count of 100ns ticks since 1601-01-01 (UTC) into a naive
      datetime.datetime.
    Returns None when the value is past what datetime can hold (year 9999).
    """
    try:
        return FILETIME_EPOCH + timedelta(microseconds=qword // 10)
    except (OverflowError, ValueError):
        return None


class BinaryParserException(Exception):
    """
    Base Exception class for binary parsing.
    """
    def __init__(self, value):
        """
        Constructor.
        Arguments:
        - `value`: A string description.
        """
        super(BinaryParserException, self).__init__(value)
        self._value = value

    def __repr__(self):
        return "BinaryParserException(%r)" % (self._value)

    def __str__(self):
        return "Binary Parser Exception: %s" % (self._value)


class ParseException(BinaryParserException):
    """
    An exception to be thrown during binary parsing, such as
    when an invalid header is encountered.
    """
    def __repr__(self):
        return "ParseException(%r)" % (self._value)

    def __str__(self):
        return "Parse Exception(%s)" % (self._value)


class OverrunBufferException(ParseException):
    def __init__(self, readOffs, bufLen):
        tvalue = "read: %s, buffer length: %s" % (hex(readOffs), hex(bufLen))
        super(OverrunBufferException, self).__init__(tvalue)
        self.read_offset = readOffs
        self.buffer_length = bufLen

    def __repr__(self):
        return "OverrunBufferException(%r)" % (self._value)

    def __str__(self):
        return "Tried to parse beyond the end of the buffer (%s)" % \
            (self._value)


def _unpack(fmt, buf, offset, limit=None):
    size = struct.calcsize(fmt)
    if limit is None:
        limit = len(buf)
    if offset < 0 or offset + size > limit:
        raise OverrunBufferException(offset, limit)
    try:
        return struct.unpack_from(fmt, buf, offset)[0]
    except struct.error:
        raise OverrunBufferException(offset, len(buf))


def read_dword(buf, offset):
    """
    Returns a little-endian unsigned dword from the relative offset of the given buffer.
    Throws:
    - `OverrunBufferException`
    """
    return _unpack("<I", buf, offset)


class Block(object):
    """
    Base class for structure blocks in binary parsing.
    A block is associated with a offset into a byte-string, and
      optionally an absolute limit past which no field may be read.
    """
    BASIC_SIZES = {
        "byte": 1,
        "int8": 1,
        "word": 2,
        "dword": 4,
        "qword": 8,
        "filetime": 8,
    }

    def __init__(self, buf, offset, limit=None):
        """
        Constructor.
        Arguments:
        - `buf`: Byte string containing stuff to parse.
        - `offset`: The offset into the buffer at which the block starts.
        - `limit`: (Optional) The absolute offset at which the block ends.
            Defaults to the end of the buffer.
        """
        self._buf = buf
        self._offset = offset
        if limit is None or limit > len(buf):
            limit = len(buf)
        self._limit = limit
        self._implicit_offset = 0

    def __repr__(self):
        return "%s(offset=%r, limit=%r)" % (self.__class__.__name__,
                                            self._offset, self._limit)

    def declare_field(self, type_, name, offset=None, length=None):
        """
        Declaratively add fields to this block.
        This method will dynamically add a corresponding unpacker
          method to this block.

        Arguments:
        - `type_`: A string, one of the unpack_* types.
        - `name`: A string.
        - `offset`: A number. Defaults to the end of the previous field.
        - `length`: (Optional) A number. For binary, length in bytes,
            for wstrings, length in chars.
        """
        if offset is None:
            offset = self._implicit_offset

        f = getattr(self, "unpack_" + type_)
        if length is None:
            if type_ not in self.BASIC_SIZES:
                raise ParseException("Implicit length not supported for type: " + type_)

            def handler():
                return f(offset)
            self._implicit_offset = offset + self.BASIC_SIZES[type_]
        else:
            def handler():
                return f(offset, length)
            if type_ == "wstring":
                self._implicit_offset = offset + (2 * length)
            else:
                self._implicit_offset = offset + length

        setattr(self, name, handler)
        setattr(self, "_off_" + name, offset)

    def current_field_offset(self):
        return self._implicit_offset

    def unpack_byte(self, offset):
        """
        Returns a little-endian unsigned byte from the relative offset.
        Throws:
        - `OverrunBufferException`
        """
        return _unpack("<B", self._buf, self._offset + offset, self._limit)

    def unpack_int8(self, offset):
        """
        Returns a little-endian signed byte from the relative offset.
        Throws:
        - `OverrunBufferException`
        """
        return _unpack("<b", self._buf, self._offset + offset, self._limit)

    def unpack_word(self, offset):
        """
        Returns a little-endian unsigned WORD (2 bytes) from the
          relative offset.
        Throws:
        - `OverrunBufferException`
        """
        return _unpack("<H", self._buf, self._offset + offset, self._limit)

    def pack_word(self, offset, word):
        """
        Applies the little-endian WORD (2 bytes) to the relative offset.
        The underlying buffer must be mutable.
        Arguments:
        - `offset`: The relative offset from the start of the block.
        - `word`: The data to apply.
        """
        o = self._offset + offset
        if o < 0 or o + 2 > self._limit:
            raise OverrunBufferException(o, self._limit)
        struct.pack_into("<H", self._buf, o, word)

    def unpack_dword(self, offset):
        """
        Returns a little-endian DWORD (4 bytes) from the relative offset.
        Throws:
        - `OverrunBufferException`
        """
        return _unpack("<I", self._buf, self._offset + offset, self._limit)

    def unpack_qword(self, offset):
        """
        Returns a little-endian QWORD (8 bytes) from the relative offset.
        Throws:
        - `OverrunBufferException`
        """
        return _unpack("<Q", self._buf, self._offset + offset, self._limit)

    def unpack_filetime(self, offset):
        """
        Returns the raw QWORD Windows timestamp at the relative offset.
        Use `parse_filetime` to get a datetime from it; the raw ticks are
          kept so that out-of-range values never fail a parse.
        """
        return self.unpack_qword(offset)

    def unpack_binary(self, offset, length=0):
        """
        Returns raw binary data from the relative offset with the given length.
        Arguments:
        - `offset`: The relative offset from the start of the block.
        - `length`: The length of the binary blob. If zero, the empty
            string is returned.
        Throws:
        - `OverrunBufferException`
        """
        if not length:
            return b""
        o = self._offset + offset
        if o < 0 or o + length > self._limit:
            raise OverrunBufferException(o + length, self._limit)
        return bytes(self._buf[o:o + length])

    def unpack_wstring(self, offset, length):
        """
        Returns a string from the relative offset with the given length,
        where each character is a wchar (2 bytes).
        NTFS does not validate names, so unpaired surrogates are passed through.
        Throws:
        - `OverrunBufferException`
        """
        return self.unpack_binary(offset, 2 * length).decode("utf-16le", "surrogatepass")

    def absolute_offset(self, offset):
        """
        Get the absolute offset from an offset relative to this block
        Arguments:
        - `offset`: The relative offset into this block.
        """
        return self._offset + offset

    def offset(self):
        """
        Equivalent to self.absolute_offset(0x0), which is the starting
          offset of this block.
        """
        return self._offset

    def limit(self):
        return self._limit
