import struct

import pytest

from ntfsreader.errors import CorruptDataError
from ntfsreader.errors import CorruptMftError
from ntfsreader.errors import UnsupportedError
from ntfsreader.MFT import ALL_INSTANCES
from ntfsreader.MFT import ATTR_TYPE
from ntfsreader.MFT import AttributeProcessor
from ntfsreader.MFT import FILENAME_NAMESPACE
from ntfsreader.MFT import FILE_ATTRIBUTES
from ntfsreader.MFT import Fragment
from ntfsreader.MFT import MFT_RECORD_FLAGS
from ntfsreader.MFT import NodeBuilder
from ntfsreader.MFT import VIRTUAL_FRAGMENT
from ntfsreader.MFT import encode_runlist
from ntfsreader.MFT import fixup_record
from ntfsreader.MFT import iter_attributes
from ntfsreader.MFT import parse_attribute_list

from ntfs_image import FILETIME_2020
from ntfs_image import file_name
from ntfs_image import file_record
from ntfs_image import nonresident_attribute
from ntfs_image import resident_attribute
from ntfs_image import standard_information


def parse(attributes, processor=None, streams=None, is_mft_node=False, **kwargs):
    if processor is None:
        processor = AttributeProcessor()
    record = file_record(6, attributes, **kwargs)
    assert fixup_record(record, 0, len(record), 512)
    return processor.process_record(record, 0, len(record), 6, streams=streams,
                                    is_mft_node=is_mft_node)


def attribute_list_entry(type_, reference, instance=0, lowest_vcn=0):
    entry = bytearray(0x20)
    struct.pack_into("<IHBBQQH", entry, 0x0, type_, len(entry), 0, 0x1A,
                     lowest_vcn, reference, instance)
    return bytes(entry)


def test_file():
    node = parse([standard_information(FILE_ATTRIBUTES.ARCHIVE | FILE_ATTRIBUTES.HIDDEN),
                  file_name("a.txt", parent=42),
                  resident_attribute(ATTR_TYPE.DATA, b"0123456789")])
    assert node.index == 6
    assert node.name == "a.txt"
    assert node.parent_index == 42
    assert node.size == 10
    assert node.attributes == FILE_ATTRIBUTES.ARCHIVE | FILE_ATTRIBUTES.HIDDEN
    assert node.creation_time is None


def test_directory_flag():
    node = parse([file_name("sub")],
                 flags=MFT_RECORD_FLAGS.MFT_RECORD_IN_USE | MFT_RECORD_FLAGS.MFT_RECORD_IS_DIRECTORY)
    node = node.build()
    assert node.is_directory()
    assert not node.is_hidden()
    assert node.flags() == ["directory"]


def test_default_parent():
    node = parse([standard_information()])
    assert node.parent_index == 5
    assert node.name is None


def test_timestamps():
    attributes = [standard_information(created=FILETIME_2020, modified=FILETIME_2020 + 10,
                                       changed=1, accessed=FILETIME_2020 + 20),
                  file_name("a.txt")]
    node = parse(attributes, AttributeProcessor(include_timestamps=True))
    assert node.creation_time == FILETIME_2020
    assert node.modification_time == FILETIME_2020 + 10
    assert node.access_time == FILETIME_2020 + 20
    assert node.build().created().year == 2020

    node = parse(attributes)
    assert node.modification_time is None
    assert node.build().created() is None


def test_long_name_wins():
    node = parse([file_name("ALONGN~1.TXT", namespace=FILENAME_NAMESPACE.DOS),
                  file_name("a long name.txt", namespace=FILENAME_NAMESPACE.WIN32),
                  file_name("second.txt", namespace=FILENAME_NAMESPACE.WIN32)])
    assert node.name == "a long name.txt"


def test_win32_and_dos_name():
    node = parse([file_name("short.txt", namespace=FILENAME_NAMESPACE.WIN32_AND_DOS)])
    assert node.name == "short.txt"


def test_posix_name_ignored():
    node = parse([file_name("posix", namespace=FILENAME_NAMESPACE.POSIX)])
    assert node.name is None


def test_unicode_name():
    node = parse([file_name("résumé 日本.txt")])
    assert node.name == "résumé 日本.txt"


def test_wide_parent_reference():
    with pytest.raises(UnsupportedError):
        parse([file_name("a.txt", parent_high=1)])


def test_not_in_use():
    assert parse([file_name("a.txt")], flags=0) is None


def test_extension_record():
    assert parse([file_name("a.txt")], base_reference=(1 << 48) | 8) is None


def test_not_a_record():
    assert AttributeProcessor().process_record(bytearray(1024), 0, 1024, 6) is None


def test_attrs_offset_outside_record():
    record = file_record(6, [file_name("a.txt")])
    assert fixup_record(record, 0, 1024, 512)
    struct.pack_into("<H", record, 0x14, 1024)
    with pytest.raises(CorruptMftError):
        AttributeProcessor().process_record(record, 0, 1024, 6)


def test_bytes_in_use_outside_record():
    record = file_record(6, [file_name("a.txt")])
    assert fixup_record(record, 0, 1024, 512)
    struct.pack_into("<I", record, 0x18, 1025)
    with pytest.raises(CorruptMftError):
        AttributeProcessor().process_record(record, 0, 1024, 6)


def test_truncated_table():
    table = standard_information() + file_name("a.txt")
    processor = AttributeProcessor()
    for cut in (len(table) - 1, len(table) - 0x20, 8, 1):
        with pytest.raises(CorruptMftError):
            processor.process_attributes(NodeBuilder(6), table, 0, cut)


def test_end_of_table():
    table = standard_information() + file_name("a.txt")
    node = NodeBuilder(6)
    AttributeProcessor().process_attributes(node, table, 0, len(table))
    assert node.name == "a.txt"

    node = NodeBuilder(6)
    table = file_name("a.txt") + b"\xFF\xFF\xFF\xFF" + b"\x00" * 4 + file_name("b.txt")
    AttributeProcessor().process_attributes(node, table, 0, len(table))
    assert node.name == "a.txt"


def test_short_attribute_length():
    table = bytearray(file_name("a.txt"))
    struct.pack_into("<I", table, 4, 8)
    with pytest.raises(CorruptMftError):
        AttributeProcessor().process_attributes(NodeBuilder(6), table, 0, len(table))


def test_zero_attribute_length():
    table = bytearray(file_name("a.txt"))
    struct.pack_into("<I", table, 4, 0)
    with pytest.raises(CorruptMftError):
        AttributeProcessor().process_attributes(NodeBuilder(6), table, 0, len(table))


def test_resident_value_overrun():
    table = bytearray(file_name("a.txt"))
    struct.pack_into("<I", table, 0x10, 0x1000)
    with pytest.raises(CorruptMftError):
        AttributeProcessor().process_attributes(NodeBuilder(6), table, 0, len(table))


def test_name_overrun():
    table = bytearray(file_name("a.txt"))
    # the name length byte of the FILE_NAME value
    table[0x18 + 0x40] = 0x7F
    with pytest.raises(CorruptMftError):
        AttributeProcessor().process_attributes(NodeBuilder(6), table, 0, len(table))


def test_attribute_list_skipped():
    node = parse([resident_attribute(ATTR_TYPE.ATTRIBUTE_LIST, b"\xEE" * 7),
                  file_name("a.txt")])
    assert node.name == "a.txt"


def test_instance_filter():
    table = standard_information(FILE_ATTRIBUTES.HIDDEN, instance=0) + \
        file_name("a.txt", instance=1)
    node = NodeBuilder(6)
    AttributeProcessor().process_attributes(node, table, 0, len(table), instance=1)
    assert node.name == "a.txt"
    assert node.attributes == 0

    node = NodeBuilder(6)
    AttributeProcessor().process_attributes(node, table, 0, len(table), instance=ALL_INSTANCES)
    assert node.attributes == FILE_ATTRIBUTES.HIDDEN


def test_nonresident_size():
    runlist = encode_runlist([Fragment(0x20, 2)])
    node = parse([file_name("big.bin"), nonresident_attribute(ATTR_TYPE.DATA, runlist, 8000)])
    assert node.size == 8000


def test_streams():
    data = encode_runlist([Fragment(0x20, 2), Fragment(VIRTUAL_FRAGMENT, 4)])
    ads = encode_runlist([Fragment(0x40, 1)])
    attributes = [file_name("big.bin"),
                  nonresident_attribute(ATTR_TYPE.DATA, data, 12000),
                  nonresident_attribute(ATTR_TYPE.DATA, ads, 100, name="ads")]

    streams = []
    node = parse(attributes, streams=streams)
    assert node.size == 12000
    assert [(s.name, s.type, s.size) for s in streams] == \
        [(None, ATTR_TYPE.DATA, 12000), ("ads", ATTR_TYPE.DATA, 100)]
    assert streams[0].fragments == []

    streams = []
    parse(attributes, AttributeProcessor(include_fragments=True), streams=streams)
    assert streams[0].fragments == [Fragment(0x20, 2), Fragment(VIRTUAL_FRAGMENT, 4)]
    assert streams[0].clusters == 2
    assert streams[1].fragments == [Fragment(0x40, 1)]

    node = node.build(streams)
    assert len(node.streams) == 2


def test_mft_node_fragments():
    runlist = encode_runlist([Fragment(4, 4)])
    streams = []
    parse([file_name("$MFT"), nonresident_attribute(ATTR_TYPE.DATA, runlist, 0x4000)],
          streams=streams, is_mft_node=True)
    assert streams[0].fragments == [Fragment(4, 4)]


def test_stream_extents_merge():
    # the second extent of the same stream starts at VCN 2
    first = nonresident_attribute(ATTR_TYPE.DATA, encode_runlist([Fragment(0x20, 2)]), 16384)
    second = nonresident_attribute(ATTR_TYPE.DATA,
                                   encode_runlist([Fragment(0x30, 4)], starting_vcn=2), 0,
                                   lowest_vcn=2)
    streams = []
    parse([file_name("big.bin"), first, second], AttributeProcessor(include_fragments=True),
          streams=streams)
    assert len(streams) == 1
    assert streams[0].size == 16384
    assert streams[0].fragments == [Fragment(0x20, 2), Fragment(0x30, 4)]
    assert streams[0].clusters == 4


def test_corrupt_runlist():
    # fills the attribute exactly, the last run is cut off
    runlist = b"\x21\x18\x34\x56\x11\x01\x02\x11"
    with pytest.raises(CorruptDataError):
        parse([file_name("big.bin"), nonresident_attribute(ATTR_TYPE.DATA, runlist, 100)],
              AttributeProcessor(include_fragments=True), streams=[])


def test_iter_attributes():
    table = standard_information() + file_name("a.txt") + b"\xFF\xFF\xFF\xFF"
    types = [a.type() for a in iter_attributes(table, 0, len(table))]
    assert types == [ATTR_TYPE.STANDARD_INFORMATION, ATTR_TYPE.FILENAME_INFORMATION]


def test_parse_attribute_list():
    value = attribute_list_entry(ATTR_TYPE.STANDARD_INFORMATION, (1 << 48) | 8, instance=0) + \
        attribute_list_entry(ATTR_TYPE.DATA, (1 << 48) | 9, instance=3, lowest_vcn=4)
    entries = parse_attribute_list(value)
    assert [(e.type(), e.record_index(), e.instance(), e.lowest_vcn()) for e in entries] == \
        [(ATTR_TYPE.STANDARD_INFORMATION, 8, 0, 0), (ATTR_TYPE.DATA, 9, 3, 4)]
    assert entries[0].name() is None

    # trailing garbage shorter than an entry is ignored
    assert len(parse_attribute_list(value + b"\x01" * 7)) == 2
