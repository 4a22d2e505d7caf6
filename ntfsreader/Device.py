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

from ntfsreader.errors import DeviceIOError


class BlockDevice(object):
    """
    A readable volume: a raw device, a disk image, or a buffer.

    Subclasses implement `read`. The engine never opens or closes a
      device; the caller scopes its lifetime, typically with `with`.
    """
    def read(self, offset, length):
        """
        Read exactly `length` bytes starting at the absolute volume offset.
        @rtype: bytes
        @raises DeviceIOError: on failure, including a short read.
        """
        raise NotImplementedError()

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        self.close()


class FileDevice(BlockDevice):
    """
    A volume backed by a file path: a disk image, or a raw volume
      such as `\\\\.\\C:` or `/dev/sdb1`.
    """
    def __init__(self, filename, offset=0):
        """
        Arguments:
        - `filename`: path to open, read-only.
        - `offset`: byte offset of the NTFS volume within the file, for
            images of a whole disk.
        """
        super(FileDevice, self).__init__()
        self._filename = filename
        self._base = offset
        try:
            self._f = open(filename, "rb")
        except OSError as e:
            raise DeviceIOError("Unable to open volume %s: %s" % (filename, e))
        logging.debug("Opened volume %s at offset %s.", filename, hex(offset))

    def read(self, offset, length):
        if self._f is None:
            raise DeviceIOError("Volume %s is closed" % (self._filename))
        try:
            self._f.seek(self._base + offset)
            buf = self._f.read(length)
        except OSError as e:
            raise DeviceIOError("Unable to read %s bytes at %s: %s" %
                                (hex(length), hex(offset), e))
        if len(buf) != length:
            raise DeviceIOError("Short read at %s: wanted %s bytes, got %s" %
                                (hex(offset), hex(length), hex(len(buf))))
        return buf

    def close(self):
        if self._f is not None:
            self._f.close()
            self._f = None


class BufferDevice(BlockDevice):
    """
    A volume held in memory (bytes, bytearray, or mmap).
    """
    def __init__(self, buf):
        super(BufferDevice, self).__init__()
        self._buf = buf

    def read(self, offset, length):
        if offset < 0 or offset + length > len(self._buf):
            raise DeviceIOError("Short read at %s: wanted %s bytes, volume is %s bytes" %
                                (hex(offset), hex(length), hex(len(self._buf))))
        return bytes(self._buf[offset:offset + length])
