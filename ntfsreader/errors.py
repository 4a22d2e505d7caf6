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


class NTFSException(Exception):
    """
    Base Exception class for NTFS volume parsing.
    """
    def __init__(self, value):
        """
        Constructor.
        Arguments:
        - `value`: A string description.
        """
        super(NTFSException, self).__init__(value)
        self._value = value

    def __str__(self):
        return "NTFS Exception: %s" % (self._value)


class FormatError(NTFSException):
    """
    The volume is not NTFS, or its boot sector cannot be read.
    """
    def __str__(self):
        return "FormatError(%s)" % (self._value)


class DeviceIOError(NTFSException):
    """
    The device could not be opened or read. A short read is a failure.
    """
    def __str__(self):
        return "DeviceIOError(%s)" % (self._value)


class CorruptMftError(NTFSException):
    """
    An MFT record failed a consistency check: fixup mismatch,
      attribute out of bounds, malformed header.
    """
    def __str__(self):
        return "CorruptMftError(%s)" % (self._value)


class CorruptDataError(CorruptMftError):
    """
    A run list extends past the buffer that holds it.
    """
    def __str__(self):
        return "CorruptDataError(%s)" % (self._value)


class MissingStreamError(NTFSException):
    """
    A stream required to walk the MFT does not exist.
    """
    def __str__(self):
        return "MissingStreamError(%s)" % (self._value)


class UnsupportedError(NTFSException):
    """
    The record uses a feature this reader does not handle,
      such as a parent reference beyond 32 bits.
    """
    def __str__(self):
        return "UnsupportedError(%s)" % (self._value)
