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
import logging
from collections import namedtuple

from ntfsreader.BinaryParser import Block
from ntfsreader.BinaryParser import OverrunBufferException
from ntfsreader.BinaryParser import parse_filetime
from ntfsreader.BinaryParser import read_dword
from ntfsreader.errors import CorruptDataError
from ntfsreader.errors import CorruptMftError
from ntfsreader.errors import FormatError
from ntfsreader.errors import MissingStreamError
from ntfsreader.errors import UnsupportedError


BOOT_SECTOR_SIZE = 512
NTFS_SIGNATURE = b"NTFS    "
FILE_RECORD_MAGIC = 0x454C4946  # "FILE"
END_OF_ATTRIBUTES = 0xFFFFFFFF
MFT_RECORD_HEADER_SIZE = 0x30
ATTRIBUTE_HEADER_SIZE = 0x10
ATTRIBUTE_LIST_ENTRY_SIZE = 0x1A
ALL_INSTANCES = 0xFFFF
MAX_ATTRIBUTE_LIST_DEPTH = 1000

# the largest unsigned 64-bit value marks a run with no clusters behind it
VIRTUAL_FRAGMENT = 0xFFFFFFFFFFFFFFFF

MFT_INDEX = 0
ROOT_INDEX = 5

# NT6+ reads 256KB at a time; earlier kernels used 64KB.
DEFAULT_BUFFER_SIZE = 256 * 1024


class ATTR_TYPE:
    STANDARD_INFORMATION = 0x10
    ATTRIBUTE_LIST = 0x20
    FILENAME_INFORMATION = 0x30
    OBJECT_ID = 0x40
    SECURITY_DESCRIPTOR = 0x50
    VOLUME_NAME = 0x60
    VOLUME_INFORMATION = 0x70
    DATA = 0x80
    INDEX_ROOT = 0x90
    INDEX_ALLOCATION = 0xA0
    BITMAP = 0xB0
    REPARSE_POINT = 0xC0
    EA_INFORMATION = 0xD0
    EA = 0xE0
    PROPERTY_SET = 0xF0
    LOGGED_UTILITY_STREAM = 0x100

    NAMES = {
        0x10: "$STANDARD_INFORMATION",
        0x20: "$ATTRIBUTE_LIST",
        0x30: "$FILE_NAME",
        0x40: "$OBJECT_ID",
        0x50: "$SECURITY_DESCRIPTOR",
        0x60: "$VOLUME_NAME",
        0x70: "$VOLUME_INFORMATION",
        0x80: "$DATA",
        0x90: "$INDEX_ROOT",
        0xA0: "$INDEX_ALLOCATION",
        0xB0: "$BITMAP",
        0xC0: "$REPARSE_POINT",
        0xD0: "$EA_INFORMATION",
        0xE0: "$EA",
        0xF0: "$PROPERTY_SET",
        0x100: "$LOGGED_UTILITY_STREAM",
    }


class MFT_RECORD_FLAGS:
    MFT_RECORD_IN_USE = 0x1
    MFT_RECORD_IS_DIRECTORY = 0x2


class FILE_ATTRIBUTES:
    """
    DOS style attribute flags, as stored in $STANDARD_INFORMATION.
    """
    READONLY = 0x01
    HIDDEN = 0x02
    SYSTEM = 0x04
    DIRECTORY = 0x10
    ARCHIVE = 0x20
    DEVICE = 0x40
    NORMAL = 0x80
    TEMPORARY = 0x100
    SPARSE_FILE = 0x200
    REPARSE_POINT = 0x400
    COMPRESSED = 0x800
    OFFLINE = 0x1000
    NOT_CONTENT_INDEXED = 0x2000
    ENCRYPTED = 0x4000

    FLAGS = {
        0x01: "readonly",
        0x02: "hidden",
        0x04: "system",
        0x10: "directory",
        0x20: "archive",
        0x40: "device",
        0x80: "normal",
        0x100: "temporary",
        0x200: "sparse",
        0x400: "reparse-point",
        0x800: "compressed",
        0x1000: "offline",
        0x2000: "not-indexed",
        0x4000: "encrypted",
    }


class FILENAME_NAMESPACE:
    POSIX = 0x0
    WIN32 = 0x1
    DOS = 0x2
    WIN32_AND_DOS = 0x3


def MREF(mft_reference):
    """
    Given a MREF/mft_reference, return the record number part.
    """
    return mft_reference & 0xFFFFFFFFFFFF


def get_flags(flags):
    """
    Get readable list of attribute flags.
    """
    return [name for flag, name in sorted(FILE_ATTRIBUTES.FLAGS.items())
            if flags & flag]


def mft_record_size(clusters_per_record, bytes_per_cluster):
    """
    Decode the "clusters per record" boot sector field.
    A negative value `v` means the record is `2 ** -v` bytes, which is how
      NTFS describes records smaller than one cluster.
    """
    if clusters_per_record < 0:
        return 1 << -clusters_per_record
    return clusters_per_record * bytes_per_cluster


class BootSector(Block):
    def __init__(self, buf, offset=0):
        super(BootSector, self).__init__(buf, offset)
        self.declare_field("binary", "oem_id", 0x3, 8)
        self.declare_field("word", "bytes_per_sector", 0xB)
        self.declare_field("byte", "sectors_per_cluster")
        self.declare_field("qword", "total_sectors", 0x28)
        self.declare_field("qword", "mft_lcn")
        self.declare_field("qword", "mft_mirror_lcn")
        self.declare_field("int8", "clusters_per_mft_record")
        self.declare_field("int8", "clusters_per_index_record", 0x44)
        self.declare_field("qword", "volume_serial", 0x48)

    def is_ntfs(self):
        return self.oem_id() == NTFS_SIGNATURE


class VolumeGeometry(namedtuple("VolumeGeometry", [
        "bytes_per_sector",
        "sectors_per_cluster",
        "bytes_per_cluster",
        "total_sectors",
        "total_clusters",
        "mft_lcn",
        "mft_mirror_lcn",
        "clusters_per_mft_record",
        "clusters_per_index_record",
        "bytes_per_mft_record",
        "bytes_per_index_record",
        "volume_serial"])):
    """
    Sizing constants of one NTFS volume, decoded from its boot sector.
    """
    __slots__ = ()

    @classmethod
    def from_boot_sector(cls, buf):
        """
        @type buf: bytes
        @param buf: the first sector of the volume.
        @raises FormatError: if this is not an NTFS boot sector.
        """
        boot = BootSector(buf)
        try:
            if not boot.is_ntfs():
                raise FormatError("This is not an NTFS volume (OEM ID %r)" % (boot.oem_id()))
            bytes_per_sector = boot.bytes_per_sector()
            sectors_per_cluster = boot.sectors_per_cluster()
            total_sectors = boot.total_sectors()
            clusters_per_mft_record = boot.clusters_per_mft_record()
            clusters_per_index_record = boot.clusters_per_index_record()
            mft_lcn = boot.mft_lcn()
            mft_mirror_lcn = boot.mft_mirror_lcn()
            volume_serial = boot.volume_serial()
        except OverrunBufferException as e:
            raise FormatError("Boot sector is truncated: %s" % (e))

        bytes_per_cluster = bytes_per_sector * sectors_per_cluster
        total_clusters = 0
        if sectors_per_cluster > 0:
            total_clusters = total_sectors // sectors_per_cluster

        geometry = cls(bytes_per_sector=bytes_per_sector,
                       sectors_per_cluster=sectors_per_cluster,
                       bytes_per_cluster=bytes_per_cluster,
                       total_sectors=total_sectors,
                       total_clusters=total_clusters,
                       mft_lcn=mft_lcn,
                       mft_mirror_lcn=mft_mirror_lcn,
                       clusters_per_mft_record=clusters_per_mft_record,
                       clusters_per_index_record=clusters_per_index_record,
                       bytes_per_mft_record=mft_record_size(clusters_per_mft_record,
                                                            bytes_per_cluster),
                       bytes_per_index_record=mft_record_size(clusters_per_index_record,
                                                              bytes_per_cluster),
                       volume_serial=volume_serial)
        if geometry.bytes_per_sector == 0 or geometry.bytes_per_mft_record == 0:
            raise FormatError("Boot sector declares an empty sector or MFT record size")
        if geometry.bytes_per_mft_record < geometry.bytes_per_sector or \
           geometry.bytes_per_mft_record < MFT_RECORD_HEADER_SIZE:
            raise FormatError("Boot sector declares MFT records of %d bytes, smaller than a "
                              "sector or a FILE record header" % (geometry.bytes_per_mft_record))
        logging.debug("Volume geometry: %r", geometry)
        return geometry

    def cluster_offset(self, lcn):
        return lcn * self.bytes_per_cluster

    def round_to_sector(self, length):
        if length % self.bytes_per_sector > 0:
            length += self.bytes_per_sector - (length % self.bytes_per_sector)
        return length


class Fragment(namedtuple("Fragment", ["lcn", "next_vcn"])):
    """
    One contiguous run of clusters.
    `next_vcn` is the first virtual cluster number after this run.
    """
    __slots__ = ()

    def is_virtual(self):
        return self.lcn == VIRTUAL_FRAGMENT


class Stream(object):
    """
    A data stream of a file record: the default $DATA, an alternate
      data stream, the $MFT's $BITMAP, ...
    """
    def __init__(self, name, type_, size):
        super(Stream, self).__init__()
        self.name = name
        self.type = type_
        self.size = size  # bytes
        self.clusters = 0  # real clusters, virtual runs excluded
        self.fragments = []

    def __repr__(self):
        return "Stream(name=%r, type=%s, size=%d, clusters=%d, fragments=%d)" % \
            (self.name, hex(self.type), self.size, self.clusters, len(self.fragments))


def search_stream(streams, type_, name=None):
    for stream in streams:
        if stream.type == type_ and stream.name == name:
            return stream
    return None


def _read_run_field(buf, index, limit, width, signed):
    if width > 8:
        raise CorruptDataError("Datarun field of %d bytes at %s, the MFT may be corrupt." %
                               (width, hex(index)))
    if index + width > limit:
        raise CorruptDataError("Datarun is longer than buffer, the MFT may be corrupt.")
    return int.from_bytes(bytes(buf[index:index + width]), "little", signed=signed), index + width


def iter_runs(buf, offset, limit):
    """
    Decode the data runs starting at `offset`, never reading at or
      past the absolute offset `limit`.
    Yields tuples (run length, run offset), where the run offset is
      relative to the previous run; 0 means a virtual run.
    @raises CorruptDataError
    """
    if limit > len(buf):
        limit = len(buf)
    index = offset
    while True:
        if index >= limit:
            raise CorruptDataError("Datarun is longer than buffer, the MFT may be corrupt.")
        header = buf[index]
        if header == 0:
            return
        index += 1
        run_length, index = _read_run_field(buf, index, limit, header & 0x0F, False)
        run_offset, index = _read_run_field(buf, index, limit, header >> 4, True)
        logging.debug("RUN @ %s: length %s, offset %s.", hex(index), run_length, run_offset)
        yield run_length, run_offset


def process_fragments(stream, buf, offset, limit, starting_vcn=0):
    """
    Decode a run list into the fragment list of `stream`.
    @raises CorruptDataError
    """
    lcn = 0
    vcn = starting_vcn
    for run_length, run_offset in iter_runs(buf, offset, limit):
        lcn += run_offset
        vcn += run_length
        if run_offset == 0:
            stream.fragments.append(Fragment(VIRTUAL_FRAGMENT, vcn))
            continue
        if lcn < 0:
            raise CorruptDataError("Datarun points before the start of the volume.")
        stream.clusters += run_length
        stream.fragments.append(Fragment(lcn, vcn))


def decode_runlist(buf, offset=0, limit=None, starting_vcn=0):
    """
    Convenience: decode a run list into a list of Fragments.
    """
    if limit is None:
        limit = len(buf)
    stream = Stream(None, ATTR_TYPE.DATA, 0)
    process_fragments(stream, buf, offset, limit, starting_vcn)
    return stream.fragments


def _unsigned_width(value):
    if value == 0:
        return 0
    return (value.bit_length() + 7) // 8


def _signed_width(value):
    if value == 0:
        return 0
    if value > 0:
        return (value.bit_length() + 8) // 8
    return ((-value - 1).bit_length() + 8) // 8


def encode_runlist(fragments, starting_vcn=0):
    """
    Encode a sequence of Fragments into NTFS data runs, terminated with 0x00.
    Virtual fragments are encoded with an empty offset field.
    """
    encoded = bytearray()
    last_lcn = 0
    vcn = starting_vcn
    for fragment in fragments:
        length = fragment.next_vcn - vcn
        if length <= 0:
            raise ValueError("fragments must be in ascending VCN order")
        if fragment.is_virtual():
            offset = 0
        else:
            offset = fragment.lcn - last_lcn
            if offset == 0:
                raise ValueError("a real fragment cannot start where the previous one did")
            last_lcn = fragment.lcn
        length_width = _unsigned_width(length)
        offset_width = _signed_width(offset)
        encoded.append((offset_width << 4) | length_width)
        encoded.extend(length.to_bytes(length_width, "little"))
        encoded.extend(offset.to_bytes(offset_width, "little", signed=True))
        vcn = fragment.next_vcn
    encoded.append(0x00)
    return bytes(encoded)


def read_nonresident_data(device, geometry, buf, offset, limit, wanted_offset, wanted_length):
    """
    Read part of a non-resident stream straight from the volume.

    Arguments:
    - `buf`, `offset`, `limit`: the run list, as for `iter_runs`.
    - `wanted_offset`: bytes to skip from the start of the stream.
    - `wanted_length`: bytes to read. Raw volumes can only be read by
        whole sectors, so this is rounded up to the next sector.
    Returns a bytearray of the rounded length; ranges not backed by
      clusters are zero.
    @raises CorruptDataError
    @raises DeviceIOError
    """
    if offset >= limit:
        raise CorruptDataError("Nothing to read: empty run list.")
    wanted_length = geometry.round_to_sector(wanted_length)
    wanted_end = wanted_offset + wanted_length
    cluster = geometry.bytes_per_cluster
    data = bytearray(wanted_length)

    lcn = 0
    vcn = 0
    for run_length, run_offset in iter_runs(buf, offset, limit):
        lcn += run_offset
        vcn += run_length
        if run_offset == 0 or run_length == 0:
            continue

        extent_vcn = (vcn - run_length) * cluster
        extent_lcn = lcn * cluster
        extent_length = run_length * cluster

        if wanted_offset >= extent_vcn + extent_length:
            continue
        if wanted_offset > extent_vcn:
            extent_lcn += wanted_offset - extent_vcn
            extent_length -= wanted_offset - extent_vcn
            extent_vcn = wanted_offset
        if wanted_end <= extent_vcn:
            continue
        if wanted_end < extent_vcn + extent_length:
            extent_length = wanted_end - extent_vcn
        if extent_length == 0:
            continue

        logging.debug("Reading %s bytes of extent at %s.", hex(extent_length), hex(extent_lcn))
        start = extent_vcn - wanted_offset
        data[start:start + extent_length] = device.read(extent_lcn, extent_length)
    return data


class FixupBlock(Block):
    def fixup(self, num_fixups, fixup_value_offset, sector_size=512):
        """
        Undo the update sequence protection of a multi-sector structure.
        The last word of each sector must equal the update sequence number;
          it is replaced with the original value stored in the array.
        @raises CorruptMftError
        """
        try:
            fixup_value = self.unpack_word(fixup_value_offset)
            for i in range(1, num_fixups):
                fixup_offset = sector_size * i - 2
                check_value = self.unpack_word(fixup_offset)
                if check_value != fixup_value:
                    raise CorruptMftError("USA fixup word at %s is not equal to the update "
                                          "sequence number, the MFT may be corrupt." %
                                          (hex(self.offset() + fixup_offset)))
                self.pack_word(fixup_offset, self.unpack_word(fixup_value_offset + 2 * i))
                logging.debug("Fixup verified at %s.", hex(self.offset() + fixup_offset))
        except OverrunBufferException:
            raise CorruptMftError("USA data indicates that data is missing, "
                                  "the MFT may be corrupt.")


class MFTRecordHeader(FixupBlock):
    """
    The FILE record header. Fields are read on demand, so a header may
      be wrapped around any buffer; check `is_file_record` first.
    """
    def __init__(self, buf, offset, limit=None):
        super(MFTRecordHeader, self).__init__(buf, offset, limit)
        self.declare_field("dword", "magic", 0x0)
        self.declare_field("word", "usa_offset")
        self.declare_field("word", "usa_count")
        self.declare_field("qword", "lsn")
        self.declare_field("word", "sequence_number")
        self.declare_field("word", "link_count")
        self.declare_field("word", "attrs_offset")
        self.declare_field("word", "flags")
        self.declare_field("dword", "bytes_in_use")
        self.declare_field("dword", "bytes_allocated")
        self.declare_field("qword", "base_mft_record")
        self.declare_field("word", "next_attr_instance")
        self.declare_field("word", "reserved")
        self.declare_field("dword", "mft_record_number")

    def is_file_record(self):
        try:
            return self.magic() == FILE_RECORD_MAGIC
        except OverrunBufferException:
            return False

    def is_active(self):
        return self.flags() & MFT_RECORD_FLAGS.MFT_RECORD_IN_USE

    def is_directory(self):
        return self.flags() & MFT_RECORD_FLAGS.MFT_RECORD_IS_DIRECTORY

    def is_extension(self):
        return MREF(self.base_mft_record()) != 0


def fixup_record(buf, offset, length, sector_size):
    """
    Fix up the MFT record at `offset` in place.
    Returns False, leaving the buffer untouched, if there is no FILE
      record there.
    @raises CorruptMftError
    """
    header = MFTRecordHeader(buf, offset, offset + length)
    if not header.is_file_record():
        return False
    try:
        usa_count = header.usa_count()
        usa_offset = header.usa_offset()
    except OverrunBufferException as e:
        raise CorruptMftError("FILE record header at %s is truncated: %s" % (hex(offset), e))
    header.fixup(usa_count, usa_offset, sector_size)
    return True


class Attribute(Block):
    def __init__(self, buf, offset, limit):
        super(Attribute, self).__init__(buf, offset, limit)
        self.declare_field("dword", "type")
        self.declare_field("dword", "length")
        self.declare_field("byte", "non_resident")
        self.declare_field("byte", "name_length")
        self.declare_field("word", "name_offset")
        self.declare_field("word", "flags")
        self.declare_field("word", "instance")
        if self.non_resident() > 0:
            self.declare_field("qword", "lowest_vcn", 0x10)
            self.declare_field("qword", "highest_vcn")
            self.declare_field("word", "runlist_offset")
            self.declare_field("byte", "compression_unit")
            self.declare_field("qword", "allocated_size", 0x28)
            self.declare_field("qword", "data_size")
            self.declare_field("qword", "initialized_size")
        else:
            self.declare_field("dword", "value_length", 0x10)
            self.declare_field("word", "value_offset")
            self.declare_field("byte", "value_flags")

    def name(self):
        """
        Returns None for an unnamed attribute.
        """
        if self.name_length() == 0:
            return None
        return self.unpack_wstring(self.name_offset(), self.name_length())

    def value_start(self):
        """
        Absolute offset of a resident attribute's value, checked against
          the attribute's bounds.
        """
        if self.value_offset() + self.value_length() > self.length():
            raise OverrunBufferException(self.absolute_offset(self.value_offset() +
                                                              self.value_length()),
                                         self.limit())
        return self.absolute_offset(self.value_offset())

    def runlist_start(self):
        return self.absolute_offset(self.runlist_offset())

    def standard_information(self):
        return StandardInformation(self._buf, self.value_start(), self.limit())

    def filename_information(self):
        return FilenameAttribute(self._buf, self.value_start(), self.limit())

    def add_fragments(self, stream):
        """
        Decode this attribute's run list into `stream`.
        """
        process_fragments(stream, self._buf, self.runlist_start(), self.limit(),
                          self.lowest_vcn())


def iter_attributes(buf, offset, length):
    """
    Walk the attribute table at `offset`, stopping at the end marker or
      the end of the table.
    Yields Attribute blocks, each limited to its own declared length.
    @raises CorruptMftError
    """
    end = offset + length
    if end > len(buf):
        raise CorruptMftError("Attribute table at %s is larger than the buffer." % (hex(offset)))
    attribute_offset = offset
    while attribute_offset < end:
        if attribute_offset + 4 <= end and read_dword(buf, attribute_offset) == END_OF_ATTRIBUTES:
            return
        if attribute_offset + ATTRIBUTE_HEADER_SIZE > end:
            raise CorruptMftError("Attribute header at %s is cut off, the MFT may be corrupt." %
                                  (hex(attribute_offset)))
        attribute_length = read_dword(buf, attribute_offset + 4)
        if attribute_length < ATTRIBUTE_HEADER_SIZE or \
           attribute_offset + attribute_length > end:
            raise CorruptMftError("Attribute at %s is bigger than the data, "
                                  "the MFT may be corrupt." % (hex(attribute_offset)))
        try:
            attribute = Attribute(buf, attribute_offset, attribute_offset + attribute_length)
        except OverrunBufferException as e:
            raise CorruptMftError("Attribute at %s is truncated: %s" % (hex(attribute_offset), e))
        logging.debug("ATTRIBUTE @ %s: type %s, length %s.", hex(attribute_offset),
                      hex(attribute.type()), hex(attribute_length))
        attribute_offset += attribute_length
        yield attribute


class StandardInformation(Block):
    def __init__(self, buf, offset, limit):
        super(StandardInformation, self).__init__(buf, offset, limit)
        self.declare_field("filetime", "created_time", 0x0)
        self.declare_field("filetime", "modified_time")
        self.declare_field("filetime", "changed_time")
        self.declare_field("filetime", "accessed_time")
        self.declare_field("dword", "attributes")


class FilenameAttribute(Block):
    def __init__(self, buf, offset, limit):
        super(FilenameAttribute, self).__init__(buf, offset, limit)
        logging.debug("FILENAME ATTRIBUTE at %s.", hex(offset))
        self.declare_field("qword", "mft_parent_reference", 0x0)
        self.declare_field("filetime", "created_time")
        self.declare_field("filetime", "modified_time")
        self.declare_field("filetime", "changed_time")
        self.declare_field("filetime", "accessed_time")
        self.declare_field("qword", "physical_size")
        self.declare_field("qword", "logical_size")
        self.declare_field("dword", "flags")
        self.declare_field("dword", "reparse_value")
        self.declare_field("byte", "filename_length")
        self.declare_field("byte", "filename_type")
        # the reference is split into a 32-bit low part, a 16-bit high
        # part and a sequence number
        self.declare_field("dword", "parent_inode_low", 0x0)
        self.declare_field("word", "parent_inode_high")
        self.declare_field("word", "parent_sequence_number")

    def filename(self):
        return self.unpack_wstring(0x42, self.filename_length())

    def is_long_name(self):
        return self.filename_type() in (FILENAME_NAMESPACE.WIN32,
                                        FILENAME_NAMESPACE.WIN32_AND_DOS)


class AttributeListEntry(Block):
    def __init__(self, buf, offset, limit):
        super(AttributeListEntry, self).__init__(buf, offset, limit)
        self.declare_field("dword", "type", 0x0)
        self.declare_field("word", "length")
        self.declare_field("byte", "name_length")
        self.declare_field("byte", "name_offset")
        self.declare_field("qword", "lowest_vcn")
        self.declare_field("qword", "mft_reference")
        self.declare_field("word", "instance")

    def name(self):
        if self.name_length() == 0:
            return None
        return self.unpack_wstring(self.name_offset(), self.name_length())

    def record_index(self):
        return MREF(self.mft_reference())


def parse_attribute_list(buf, offset=0, length=None):
    """
    Split the value of an $ATTRIBUTE_LIST into its entries.
    Lists are usually not closed by an end marker, so running into the
      end of the buffer ends the walk.
    """
    if length is None:
        length = len(buf) - offset
    end = min(offset + length, len(buf))
    entries = []
    entry_offset = offset
    while entry_offset + ATTRIBUTE_LIST_ENTRY_SIZE <= end:
        if read_dword(buf, entry_offset) == END_OF_ATTRIBUTES:
            break
        entry = AttributeListEntry(buf, entry_offset, end)
        entry_length = entry.length()
        if entry_length < ATTRIBUTE_LIST_ENTRY_SIZE or entry_offset + entry_length > end:
            break
        entries.append(entry)
        entry_offset += entry_length
    return entries


class Node(namedtuple("Node", [
        "index",
        "parent_index",
        "attributes",
        "size",
        "name",
        "creation_time",
        "modification_time",
        "access_time",
        "streams"])):
    """
    One file or directory, as decoded from its MFT record.
    Timestamps are raw FILETIME ticks, None unless requested. `created()`,
      `modified()` and `accessed()` return None for ticks past year 9999.
    """
    __slots__ = ()

    def is_directory(self):
        return bool(self.attributes & FILE_ATTRIBUTES.DIRECTORY)

    def is_hidden(self):
        return bool(self.attributes & FILE_ATTRIBUTES.HIDDEN)

    def is_system(self):
        return bool(self.attributes & FILE_ATTRIBUTES.SYSTEM)

    def flags(self):
        return get_flags(self.attributes)

    def created(self):
        if self.creation_time is None:
            return None
        return parse_filetime(self.creation_time)

    def modified(self):
        if self.modification_time is None:
            return None
        return parse_filetime(self.modification_time)

    def accessed(self):
        if self.access_time is None:
            return None
        return parse_filetime(self.access_time)


class NodeBuilder(object):
    """
    The mutable state of a Node while its attributes are walked.
    """
    def __init__(self, index):
        super(NodeBuilder, self).__init__()
        self.index = index
        self.parent_index = ROOT_INDEX
        self.attributes = 0
        self.size = 0
        self.name = None
        self.creation_time = None
        self.modification_time = None
        self.access_time = None

    def build(self, streams=None):
        return Node(index=self.index,
                    parent_index=self.parent_index,
                    attributes=self.attributes,
                    size=self.size,
                    name=self.name,
                    creation_time=self.creation_time,
                    modification_time=self.modification_time,
                    access_time=self.access_time,
                    streams=tuple(streams or ()))


class AttributeProcessor(object):
    """
    Decodes the attributes of a fixed-up MFT record into a NodeBuilder.
    """
    def __init__(self, include_timestamps=False, include_fragments=False):
        super(AttributeProcessor, self).__init__()
        self._include_timestamps = include_timestamps
        self._include_fragments = include_fragments

    def process_record(self, buf, offset, length, index, streams=None, is_mft_node=False):
        """
        Returns a NodeBuilder, or None if the buffer does not hold an
          in-use base record.
        @raises CorruptMftError
        @raises UnsupportedError
        """
        header = MFTRecordHeader(buf, offset, offset + length)
        try:
            if not header.is_file_record():
                return None
            if not header.is_active():
                return None
            # extension records are reached through their base record
            if header.is_extension():
                return None
            attrs_offset = header.attrs_offset()
            if attrs_offset >= length:
                raise CorruptMftError("Attributes in record %d are outside the FILE record, "
                                      "the MFT may be corrupt." % (index))
            if header.bytes_in_use() > length:
                raise CorruptMftError("Record %d is bigger than the size of the buffer, "
                                      "the MFT may be corrupt." % (index))
            is_directory = header.is_directory()
        except OverrunBufferException as e:
            raise CorruptMftError("Record %d header is truncated: %s" % (index, e))

        node = NodeBuilder(index)
        if is_directory:
            node.attributes |= FILE_ATTRIBUTES.DIRECTORY
        self.process_attributes(node, buf, offset + attrs_offset, length - attrs_offset,
                                streams=streams, is_mft_node=is_mft_node)
        return node

    def process_attributes(self, node, buf, offset, length, instance=ALL_INSTANCES,
                           streams=None, is_mft_node=False):
        """
        Arguments:
        - `instance`: only decode the attribute with this id, or
            ALL_INSTANCES.
        - `streams`: a list that collects the non-resident Streams, or None.
        - `is_mft_node`: always decode fragments, as for record 0.
        @raises CorruptMftError
        @raises UnsupportedError
        """
        try:
            for attribute in iter_attributes(buf, offset, length):
                attr_type = attribute.type()
                if attr_type == ATTR_TYPE.ATTRIBUTE_LIST:
                    continue
                if instance != ALL_INSTANCES and instance != attribute.instance():
                    continue
                if attribute.non_resident() == 0:
                    self._process_resident(node, attribute)
                else:
                    self._process_nonresident(node, attribute, streams, is_mft_node)
        except OverrunBufferException as e:
            raise CorruptMftError("Attribute in record %d is bigger than the data: %s" %
                                  (node.index, e))

        if streams:
            node.size = streams[0].size

    def _process_resident(self, node, attribute):
        attr_type = attribute.type()
        if attr_type == ATTR_TYPE.FILENAME_INFORMATION:
            fn = attribute.filename_information()
            if fn.parent_inode_high() > 0:
                raise UnsupportedError("48 bit inodes are not supported (record %d)" %
                                       (node.index))
            node.parent_index = fn.parent_inode_low()
            if node.name is None and fn.is_long_name():
                node.name = fn.filename()
                logging.debug("Record %d is named %r.", node.index, node.name)
        elif attr_type == ATTR_TYPE.STANDARD_INFORMATION:
            si = attribute.standard_information()
            node.attributes |= si.attributes()
            if self._include_timestamps:
                node.creation_time = si.created_time()
                node.modification_time = si.modified_time()
                node.access_time = si.accessed_time()
        elif attr_type == ATTR_TYPE.DATA:
            node.size = attribute.value_length()

    def _process_nonresident(self, node, attribute, streams, is_mft_node):
        attr_type = attribute.type()
        data_size = attribute.data_size()
        if attr_type == ATTR_TYPE.DATA and node.size == 0:
            node.size = data_size

        if streams is None:
            return

        name = attribute.name()
        stream = search_stream(streams, attr_type, name)
        if stream is None:
            stream = Stream(name, attr_type, data_size)
            streams.append(stream)
        elif stream.size == 0:
            stream.size = data_size

        if is_mft_node or self._include_fragments:
            attribute.add_fragments(stream)


class MFTBitmap(object):
    """
    The $MFT:$BITMAP: bit `i` is set when record `i` is in use.
    """
    def __init__(self, data):
        super(MFTBitmap, self).__init__()
        self._data = bytes(data)

    def __len__(self):
        return len(self._data) * 8

    def is_in_use(self, index):
        return bool(self._data[index >> 3] & (1 << (index & 7)))

    def count_in_use(self):
        return sum(bin(b).count("1") for b in self._data)

    def data(self):
        return self._data


def check_fragments(stream, geometry):
    """
    Make sure every real fragment of `stream` lies inside the volume.
    @raises CorruptDataError
    """
    vcn = 0
    for fragment in stream.fragments:
        if not fragment.is_virtual() and \
           fragment.lcn + fragment.next_vcn - vcn > geometry.total_clusters:
            raise CorruptDataError("Datarun of %s ends past the last cluster of the volume (%s), "
                                   "the MFT may be corrupt." %
                                   (ATTR_TYPE.NAMES.get(stream.type, hex(stream.type)),
                                    hex(geometry.total_clusters)))
        vcn = fragment.next_vcn


def read_bitmap(device, geometry, streams):
    """
    Read the $MFT's $BITMAP stream into memory, one read per real fragment.
    @raises MissingStreamError
    @raises CorruptDataError
    @raises DeviceIOError
    """
    bitmap_stream = search_stream(streams, ATTR_TYPE.BITMAP)
    if bitmap_stream is None:
        raise MissingStreamError("No $BITMAP stream in the $MFT record")
    check_fragments(bitmap_stream, geometry)

    cluster = geometry.bytes_per_cluster
    total = 0
    if bitmap_stream.fragments:
        # one bit per record cannot take more clusters than the volume has
        if bitmap_stream.fragments[-1].next_vcn > geometry.total_clusters:
            raise CorruptDataError("$MFT:$BITMAP of %s clusters is larger than the volume, "
                                   "the MFT may be corrupt." %
                                   (hex(bitmap_stream.fragments[-1].next_vcn)))
        total = bitmap_stream.fragments[-1].next_vcn * cluster
    data = bytearray(total)

    vcn = 0
    for fragment in bitmap_stream.fragments:
        if not fragment.is_virtual():
            length = (fragment.next_vcn - vcn) * cluster
            data[vcn * cluster:vcn * cluster + length] = \
                device.read(geometry.cluster_offset(fragment.lcn), length)
        vcn = fragment.next_vcn
    logging.debug("Read %s bytes of MFT bitmap.", hex(total))
    return MFTBitmap(data)


class ChunkedMftReader(object):
    """
    Reads the $MFT data stream in blocks of consecutive records.

    Virtual fragments hold no records: record `i` lives at byte
      `i * record size` of the stream's real clusters. The fragment
      cursor only moves forward unless an earlier index is requested.
    """
    def __init__(self, device, geometry, data_stream, buffer_size=DEFAULT_BUFFER_SIZE):
        super(ChunkedMftReader, self).__init__()
        self._device = device
        self._geometry = geometry
        self._stream = data_stream
        record_size = geometry.bytes_per_mft_record
        self._records_per_chunk = max(1, buffer_size // record_size)
        self._max_index = data_stream.size // record_size
        self._buffer = bytearray(self._records_per_chunk * record_size)
        self.bytes_read = 0
        self._rewind()

    def _rewind(self):
        self._fragment_index = 0
        self._vcn = 0
        self._real_vcn = 0
        self.block_start = 0
        self.block_end = 0

    def covers(self, index):
        return self.block_start <= index < self.block_end

    def read_chunk(self, index):
        """
        Load the block starting at `index`.
        Returns False when `index` lies past the last fragment.
        """
        if index < self.block_start:
            self._rewind()
        if index >= self._max_index:
            return False

        record_size = self._geometry.bytes_per_mft_record
        cluster = self._geometry.bytes_per_cluster
        fragments = self._stream.fragments

        fragment_end = 0
        while self._fragment_index < len(fragments):
            fragment = fragments[self._fragment_index]
            if not fragment.is_virtual():
                # first index after this fragment
                fragment_end = (self._real_vcn + fragment.next_vcn - self._vcn) * cluster // record_size
                if fragment_end > index:
                    break
                self._real_vcn += fragment.next_vcn - self._vcn
            self._vcn = fragment.next_vcn
            self._fragment_index += 1

        if self._fragment_index >= len(fragments):
            return False

        fragment = fragments[self._fragment_index]
        self.block_start = index
        self.block_end = min(index + self._records_per_chunk, self._max_index, fragment_end)

        position = (fragment.lcn - self._real_vcn) * cluster + self.block_start * record_size
        length = (self.block_end - self.block_start) * record_size
        logging.debug("Reading records %d-%d (%s bytes at %s).", self.block_start,
                      self.block_end - 1, hex(length), hex(position))
        self._buffer[0:length] = self._device.read(position, length)
        self.bytes_read += length
        return True

    def record(self, index):
        """
        Returns (buffer, offset) of the raw record `index`, or None at the
          end of the stream. The buffer is overwritten by the next chunk.
        """
        if not self.covers(index):
            if not self.read_chunk(index):
                return None
        return self._buffer, (index - self.block_start) * self._geometry.bytes_per_mft_record


class ScanOptions(object):
    def __init__(self, include_timestamps=False, include_fragments=False,
                 include_streams=False, buffer_size=DEFAULT_BUFFER_SIZE):
        """
        Arguments:
        - `include_timestamps`: capture $STANDARD_INFORMATION timestamps.
        - `include_fragments`: decode the run lists of every stream.
            Implies `include_streams`.
        - `include_streams`: attach the non-resident streams to each Node.
        - `buffer_size`: bytes of MFT to read per device call.
        """
        super(ScanOptions, self).__init__()
        self.include_timestamps = include_timestamps
        self.include_fragments = include_fragments
        self.include_streams = include_streams or include_fragments
        self.buffer_size = buffer_size


class ScanStatistics(object):
    """
    Counts why records were not emitted.
    Records skipped for corruption are otherwise indistinguishable from
      records with no name; `on_skip(index, reason, exception)` is called
      for each one.
    """
    NOT_IN_USE = "not_in_use"
    INVALID = "invalid"
    UNNAMED = "unnamed"
    CORRUPT = "corrupt"
    UNSUPPORTED = "unsupported"
    REASONS = (NOT_IN_USE, INVALID, UNNAMED, CORRUPT, UNSUPPORTED)

    def __init__(self, on_skip=None):
        super(ScanStatistics, self).__init__()
        self._on_skip = on_skip
        self.skipped = dict((reason, 0) for reason in self.REASONS)
        self.emitted = 0
        self.bytes_read = 0

    def skip(self, index, reason, exception=None):
        self.skipped[reason] += 1
        if self._on_skip is not None:
            self._on_skip(index, reason, exception)

    def emit(self, node):
        self.emitted += 1

    def total_skipped(self):
        return sum(self.skipped.values())


class MFTEnumerator(object):
    """
    Yields a Node for every named, in-use base record of a volume, in
      ascending record order.

    The enumerator is a single-pass iterator. Scanning the volume again
      requires a new MFTEnumerator. It never closes `device`.
    """
    INITIALIZING = "initializing"
    SCANNING = "scanning"
    DONE = "done"

    def __init__(self, device, options=None, on_bitmap=None, statistics=None):
        """
        Arguments:
        - `device`: a BlockDevice over the volume.
        - `options`: a ScanOptions.
        - `on_bitmap`: called once with the MFTBitmap when it has been read,
            before any Node is produced.
        - `statistics`: a ScanStatistics to update.
        """
        super(MFTEnumerator, self).__init__()
        if options is None:
            options = ScanOptions()
        if statistics is None:
            statistics = ScanStatistics()
        self._device = device
        self._options = options
        self._on_bitmap = on_bitmap
        self.statistics = statistics
        self._processor = AttributeProcessor(include_timestamps=options.include_timestamps,
                                             include_fragments=options.include_fragments)
        self.state = MFTEnumerator.INITIALIZING
        self.geometry = None
        self.bitmap = None
        self.mft_streams = None
        self.mft_data_stream = None
        self.max_index = 0
        self._reader = None
        self._index = 1

    def initialize(self):
        """
        Read the boot sector, the $MFT record and the MFT bitmap.
        Failures here are fatal to the scan.
        @raises FormatError
        @raises DeviceIOError
        @raises CorruptMftError
        @raises MissingStreamError
        """
        if self.state != MFTEnumerator.INITIALIZING:
            return

        self.geometry = VolumeGeometry.from_boot_sector(self._device.read(0, BOOT_SECTOR_SIZE))
        logging.info("NTFS volume: %d bytes per cluster, %d bytes per MFT record, $MFT at cluster %d.",
                     self.geometry.bytes_per_cluster, self.geometry.bytes_per_mft_record,
                     self.geometry.mft_lcn)

        record_size = self.geometry.bytes_per_mft_record
        buf = bytearray(self._device.read(self.geometry.cluster_offset(self.geometry.mft_lcn),
                                          record_size))
        if not fixup_record(buf, 0, record_size, self.geometry.bytes_per_sector):
            raise CorruptMftError("Can't interpret MFT record: no FILE signature")
        streams = []
        mft_node = self._processor.process_record(buf, 0, record_size, MFT_INDEX,
                                                  streams=streams, is_mft_node=True)
        if mft_node is None:
            raise CorruptMftError("Can't interpret MFT record: not an in-use base record")
        self.mft_streams = streams

        self.mft_data_stream = search_stream(streams, ATTR_TYPE.DATA)
        if self.mft_data_stream is None:
            raise MissingStreamError("No $DATA stream in the $MFT record")
        check_fragments(self.mft_data_stream, self.geometry)

        self.bitmap = read_bitmap(self._device, self.geometry, streams)
        logging.info("MFT bitmap: %d records, %d in use.", len(self.bitmap),
                     self.bitmap.count_in_use())
        if self._on_bitmap is not None:
            self._on_bitmap(self.bitmap)

        self.max_index = min(len(self.bitmap), self.mft_data_stream.size // record_size)
        self._reader = ChunkedMftReader(self._device, self.geometry, self.mft_data_stream,
                                        buffer_size=self._options.buffer_size)
        self._index = 1
        self.state = MFTEnumerator.SCANNING

    def __iter__(self):
        return self

    def __next__(self):
        if self.state == MFTEnumerator.INITIALIZING:
            self.initialize()

        while self.state == MFTEnumerator.SCANNING:
            index = self._index
            if index >= self.max_index:
                self._finish()
                break
            self._index += 1

            if not self.bitmap.is_in_use(index):
                self.statistics.skip(index, ScanStatistics.NOT_IN_USE)
                continue

            node = self._read_node(index)
            if node is not None:
                self.statistics.emit(node)
                return node

        raise StopIteration()

    def _finish(self):
        self.state = MFTEnumerator.DONE
        self.statistics.bytes_read = self._reader.bytes_read
        logging.info("MFT scan complete: %d nodes, %d records skipped.",
                     self.statistics.emitted, self.statistics.total_skipped())

    def _read_node(self, index):
        located = self._reader.record(index)
        if located is None:
            logging.debug("Record %d is past the last $MFT fragment.", index)
            self._finish()
            return None
        buf, offset = located

        streams = None
        if self._options.include_streams:
            streams = []

        record_size = self.geometry.bytes_per_mft_record
        try:
            if not fixup_record(buf, offset, record_size, self.geometry.bytes_per_sector):
                self.statistics.skip(index, ScanStatistics.INVALID)
                return None
            node = self._processor.process_record(buf, offset, record_size, index,
                                                  streams=streams)
        except CorruptMftError as e:
            logging.warning("Skipping record %d: %s", index, e)
            self.statistics.skip(index, ScanStatistics.CORRUPT, e)
            return None
        except UnsupportedError as e:
            logging.warning("Skipping record %d: %s", index, e)
            self.statistics.skip(index, ScanStatistics.UNSUPPORTED, e)
            return None

        if node is None:
            self.statistics.skip(index, ScanStatistics.INVALID)
            return None
        if node.name is None:
            self.statistics.skip(index, ScanStatistics.UNNAMED)
            return None
        return node.build(streams)

    def record_offset(self, index):
        """
        Absolute volume offset of record `index`, found through the $MFT
          fragment list.
        @raises CorruptMftError: if the record lies outside the MFT.
        """
        self.initialize()
        record_size = self.geometry.bytes_per_mft_record
        cluster = self.geometry.bytes_per_cluster
        position = index * record_size
        wanted_vcn = position // cluster

        vcn = 0
        real_vcn = 0
        for fragment in self.mft_data_stream.fragments:
            if not fragment.is_virtual():
                length = fragment.next_vcn - vcn
                if real_vcn <= wanted_vcn < real_vcn + length:
                    return self.geometry.cluster_offset(fragment.lcn - real_vcn) + position
                real_vcn += length
            vcn = fragment.next_vcn
        raise CorruptMftError("Record %d does not exist (outside the MFT)." % (index))

    def read_record(self, index):
        """
        Read and fix up a single record, independently of the scan.
        Returns a bytearray, or None if there is no FILE record at `index`.
        @raises CorruptMftError
        @raises DeviceIOError
        """
        offset = self.record_offset(index)
        record_size = self.geometry.bytes_per_mft_record
        buf = bytearray(self._device.read(offset, record_size))
        if not fixup_record(buf, 0, record_size, self.geometry.bytes_per_sector):
            return None
        return buf

    def get_attribute_list(self, index):
        """
        Returns the $ATTRIBUTE_LIST entries of record `index`, or an empty
          list if it has none.
        @raises CorruptMftError
        @raises DeviceIOError
        """
        buf = self.read_record(index)
        if buf is None:
            return []
        header = MFTRecordHeader(buf, 0, len(buf))
        try:
            attrs_offset = header.attrs_offset()
            for attribute in iter_attributes(buf, attrs_offset, len(buf) - attrs_offset):
                if attribute.type() != ATTR_TYPE.ATTRIBUTE_LIST:
                    continue
                if attribute.non_resident() == 0:
                    start = attribute.value_start()
                    return parse_attribute_list(buf, start, attribute.value_length())
                data_size = attribute.data_size()
                value = read_nonresident_data(self._device, self.geometry, buf,
                                              attribute.runlist_start(), attribute.limit(),
                                              0, data_size)
                return parse_attribute_list(value, 0, data_size)
        except OverrunBufferException as e:
            raise CorruptMftError("Attribute list of record %d is truncated: %s" % (index, e))
        return []

    def process_attribute_list(self, index, entries, depth=0):
        """
        Follow the entries of an attribute list to the first in-use
          extension record and return the base record it points back to.
        The extension's attributes are not merged into any Node.
        Returns 0 if no entry leads to an in-use extension record.
        @raises CorruptMftError
        """
        if depth > MAX_ATTRIBUTE_LIST_DEPTH:
            raise CorruptMftError("Infinite attribute loop, the MFT may be corrupt.")
        for entry in entries:
            reference = entry.record_index()
            # the base record lists its own attributes too
            if reference == index:
                continue
            buf = self.read_record(reference)
            if buf is None:
                continue
            header = MFTRecordHeader(buf, 0, len(buf))
            if not header.is_active():
                continue
            return MREF(header.base_mft_record())
        return 0


def scan(device, include_timestamps=False, include_fragments=False, include_streams=False,
         buffer_size=DEFAULT_BUFFER_SIZE, on_bitmap=None, statistics=None):
    """
    Enumerate the files and directories of the NTFS volume on `device`.

    The boot sector, $MFT record and MFT bitmap are read before this
      returns, so a volume that cannot be scanned fails here.
    @rtype: MFTEnumerator
    @return: a lazy, single-pass iterator of Node.
    @raises FormatError
    @raises DeviceIOError
    @raises CorruptMftError
    @raises MissingStreamError
    """
    options = ScanOptions(include_timestamps=include_timestamps,
                          include_fragments=include_fragments,
                          include_streams=include_streams,
                          buffer_size=buffer_size)
    enumerator = MFTEnumerator(device, options=options, on_bitmap=on_bitmap,
                               statistics=statistics)
    enumerator.initialize()
    return enumerator
