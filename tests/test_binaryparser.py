import datetime

import pytest

from ntfsreader.BinaryParser import Block
from ntfsreader.BinaryParser import OverrunBufferException
from ntfsreader.BinaryParser import align
from ntfsreader.BinaryParser import parse_filetime
from ntfsreader.BinaryParser import read_dword


class Header(Block):
    def __init__(self, buf, offset, limit=None):
        super(Header, self).__init__(buf, offset, limit)
        self.declare_field("dword", "magic", 0x0)
        self.declare_field("word", "count")
        self.declare_field("int8", "delta")
        self.declare_field("byte", "length")
        self.declare_field("wstring", "name", 0x8, 3)
        self.declare_field("qword", "after_name")


def test_declare_field():
    buf = bytearray(b"\xAA" * 2 + b"FILE" + b"\x02\x00" + b"\xFF" + b"\x03" +
                    "abc".encode("utf-16le") + b"\x01" + b"\x00" * 7)
    header = Header(buf, 2)
    assert header.magic() == 0x454C4946
    assert header.count() == 2
    assert header.delta() == -1
    assert header.length() == 3
    assert header.name() == "abc"
    assert header.after_name() == 1
    assert header._off_after_name == 0xE
    assert header.current_field_offset() == 0x16


def test_limit():
    buf = bytearray(32)
    block = Block(buf, 8, 12)
    assert block.unpack_dword(0) == 0
    with pytest.raises(OverrunBufferException):
        block.unpack_dword(2)
    with pytest.raises(OverrunBufferException):
        block.unpack_binary(0, 5)
    with pytest.raises(OverrunBufferException):
        block.pack_word(3, 0x1234)


def test_limit_past_buffer():
    block = Block(bytearray(4), 0, 100)
    assert block.limit() == 4
    with pytest.raises(OverrunBufferException):
        block.unpack_qword(0)


def test_pack_word():
    buf = bytearray(4)
    block = Block(buf, 2)
    block.pack_word(0, 0xBEEF)
    assert buf == bytearray(b"\x00\x00\xEF\xBE")


def test_wstring_unpaired_surrogate():
    buf = b"\x00\xD8" + "a".encode("utf-16le")
    assert Block(buf, 0).unpack_wstring(0, 2) == "\ud800a"


def test_read_dword():
    buf = b"\x01\x00\x00\x00\x02\x00\x00\x00"
    assert read_dword(buf, 4) == 2
    with pytest.raises(OverrunBufferException):
        read_dword(buf, 6)


def test_align():
    assert align(0, 8) == 0
    assert align(1, 8) == 8
    assert align(16, 8) == 16


def test_parse_filetime():
    assert parse_filetime(116444736000000000) == datetime.datetime(1970, 1, 1, 0, 0, 0)
    assert parse_filetime(0) == datetime.datetime(1601, 1, 1, 0, 0, 0)


def test_parse_filetime_out_of_range():
    assert parse_filetime(0xFFFFFFFFFFFFFFF0) is None
    # 10000-01-01
    assert parse_filetime(2650467744000000000) is None
