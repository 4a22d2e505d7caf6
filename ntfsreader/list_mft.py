#!/usr/bin/python

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
#
#
# List every file and directory of an NTFS volume straight from its MFT.
#  The default output is a Bodyfile-like line per node, keyed by name
#  rather than path since paths are not reconstructed. User defined formats
#  are Jinja2 templates rendered against the JSON model of each node.
import sys
import json
import logging
import calendar
import datetime

import argparse
from jinja2 import Environment

from ntfsreader.BinaryParser import FILETIME_EPOCH
from ntfsreader.Device import FileDevice
from ntfsreader.errors import NTFSException
from ntfsreader.MFT import ATTR_TYPE
from ntfsreader.MFT import DEFAULT_BUFFER_SIZE
from ntfsreader.MFT import ScanStatistics
from ntfsreader.MFT import scan
from ntfsreader.Progress import NullProgress
from ntfsreader.Progress import ProgressBarProgress


def unixtimestampformat(value):
    """
    A custom Jinja2 filter for converting a datetime.datetime
      a UNIX timestamp integer.
    An unset (zero) or out-of-range FILETIME becomes 0.
    """
    if value is None or value == FILETIME_EPOCH:
        return 0
    return int(calendar.timegm(value.timetuple()))


def make_fragment_model(fragment):
    return {
        "lcn": None if fragment.is_virtual() else fragment.lcn,
        "next_vcn": fragment.next_vcn,
        "is_virtual": fragment.is_virtual(),
    }


def make_stream_model(stream):
    return {
        "type": ATTR_TYPE.NAMES.get(stream.type, hex(stream.type)),
        "name": stream.name,
        "size": stream.size,
        "clusters": stream.clusters,
        "fragments": [make_fragment_model(f) for f in stream.fragments],
    }


def make_model(node):
    return {
        "inode": node.index,
        "parent": node.parent_index,
        "name": node.name,
        "size": node.size,
        "flags": node.flags(),
        "is_directory": node.is_directory(),
        "created": node.created(),
        "modified": node.modified(),
        "accessed": node.accessed(),
        "streams": [make_stream_model(s) for s in node.streams],
    }


def format_bodyfile(node):
    """
    Format a single line of Bodyfile output.
    NTFS keeps no change time in the fields read here, so it is 0.
    """
    return u"0|%s|%d|0|0|0|%d|%d|%d|0|%d" % (node.name, node.index, node.size,
                                              unixtimestampformat(node.accessed()),
                                              unixtimestampformat(node.modified()),
                                              unixtimestampformat(node.created()))


class MFTEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, datetime.datetime):
            return obj.isoformat("T") + "Z"
        return json.JSONEncoder.default(self, obj)


def format_statistics(statistics):
    lines = ["emitted: %d" % (statistics.emitted)]
    for reason in ScanStatistics.REASONS:
        lines.append("skipped (%s): %d" % (reason, statistics.skipped[reason]))
    lines.append("bytes read: %d" % (statistics.bytes_read))
    return "\n".join(lines) + "\n"


def main(argv=None):
    parser = argparse.ArgumentParser(description='List the files and '
                                     'directories of an NTFS volume from its MFT.')
    parser.add_argument('-v', action="store_true", dest="verbose",
                        help="Print debugging information")
    parser.add_argument('--offset', action="store", metavar="offset", type=int,
                        dest="offset", default=0,
                        help="Byte offset of the NTFS volume within the image")
    parser.add_argument('--buffer-size', action="store", metavar="bytes", type=int,
                        dest="buffer_size", default=DEFAULT_BUFFER_SIZE,
                        help="Bytes of MFT to read at a time")
    parser.add_argument('--timestamps', action="store_true", dest="timestamps",
                        help="Read $STANDARD_INFORMATION timestamps")
    parser.add_argument('--streams', action="store_true", dest="streams",
                        help="Collect the non-resident streams of each node")
    parser.add_argument('--fragments', action="store_true", dest="fragments",
                        help="Decode the fragments of each stream (implies --streams)")
    parser.add_argument('--progress', action="store_true",
                        dest="progress",
                        help="Update a status indicator on STDERR "
                        "if STDOUT is redirected")
    parser.add_argument('--stats', action="store_true", dest="stats",
                        help="Print scan statistics to STDERR when done")
    parser.add_argument('--format', action="store", metavar="format",
                        nargs=1, dest="format",
                        help="Output format specification")
    parser.add_argument('--format_file', action="store", metavar="format_file",
                        nargs=1, dest="format_file",
                        help="File containing output format specification")
    parser.add_argument('--json', action="store_true", dest="json",
                        help="Output in JSON format")
    parser.add_argument('filename', action="store",
                        help="Input image or raw volume path")
    results = parser.parse_args(argv)

    if results.verbose:
        logging.basicConfig(level=logging.DEBUG)

    env = Environment(trim_blocks=True, lstrip_blocks=True)
    env.filters["unixtimestampformat"] = unixtimestampformat

    template = None
    flags_count = 0
    if results.format:
        flags_count += 1
        template = env.from_string(results.format[0])
    if results.format_file:
        flags_count += 1
        with open(results.format_file[0], "r") as f:
            template = env.from_string(f.read())
    if results.json:
        flags_count += 1

    if flags_count > 1:
        sys.stderr.write("Only one of --format, --format_file, --json may be provided.\n")
        sys.exit(-1)

    if results.progress:
        progress_cls = ProgressBarProgress
    else:
        progress_cls = NullProgress

    statistics = ScanStatistics()
    try:
        with FileDevice(results.filename, offset=results.offset) as device:
            enum = scan(device,
                        include_timestamps=results.timestamps,
                        include_fragments=results.fragments,
                        include_streams=results.streams,
                        buffer_size=results.buffer_size,
                        statistics=statistics)
            progress = progress_cls(enum.max_index)
            if results.json:
                models = []
                for node in enum:
                    models.append(make_model(node))
                    progress.set_current(node.index)
                sys.stdout.write(json.dumps(models, cls=MFTEncoder, indent=2) + "\n")
            elif template is not None:
                for node in enum:
                    sys.stdout.write(template.render(record=make_model(node)) + "\n")
                    progress.set_current(node.index)
            else:
                for node in enum:
                    sys.stdout.write(format_bodyfile(node) + "\n")
                    progress.set_current(node.index)
            progress.set_complete()
    except NTFSException as e:
        sys.stderr.write("%s\n" % (e))
        return 1

    if results.stats:
        sys.stderr.write(format_statistics(statistics))
    return 0


if __name__ == "__main__":
    sys.exit(main())
