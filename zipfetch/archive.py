#!/usr/bin/env python

"""Writing zip archives to a stream and predicting their final size"""

import collections
import functools
import logging
import struct
import sys
import time
from zipfile import (
    # Constants
    ZIP_STORED, ZIP_FILECOUNT_LIMIT,
    DEFAULT_VERSION, BZIP2_VERSION, ZIP_BZIP2, LZMA_VERSION, ZIP_LZMA,
    ZIP_DEFLATED,
    # Byte sequence constants
    structFileHeader, structCentralDir, structEndArchive,
    stringFileHeader, stringCentralDir, stringEndArchive,
    # Size constants
    sizeFileHeader, sizeCentralDir, sizeEndCentDir,
    # Functions
    crc32, _get_compressor, _check_compression as _check_compress_type,
)

from zipfetch.errors import ArchiveTooLarge


# Bit flags for file entries
_FLAG_LZMA_EOS_MARKER = 1 << 1
_FLAG_DATA_DESCRIPTOR = 1 << 3
_FLAG_IS_DIRECTORY = 1 << 4
_FLAG_UTF8_FILENAME = 1 << 11

# The id of the creating system (assume everything other than Windows is unix-y)
CREATE_SYSTEM = 0 if sys.platform == "win32" else 3

# Min and max dates the Zip format can support
MIN_DATE = (1980, 1, 1, 0, 0, 0)
MAX_DATE = (2107, 12, 31, 23, 59, 59)

# Unix attributes for entries
DIRECTORY_MODE = 0o40755  # drwxr-xr-x
FILE_MODE = 0o100644  # -rw-r--r--

# Largest size or offset that fits in the 32-bit fields of a non-Zip64 archive
MAX_ZIP_SIZE = 0xFFFFFFFF

# Size of the data descriptor written after a file by ZipEntryInfo.DataDescriptor
sizeDataDescriptor = 16


__all__ = [
    # Defined classes
    "ZipWriter", "ZipEntryInfo", "SizeBreakdown",
    # Compression constants (imported from zipfile)
    "ZIP_STORED", "ZIP_DEFLATED", "ZIP_BZIP2", "ZIP_LZMA",
    # Helper functions
    "estimate",
]

__log__ = logging.getLogger(__name__)


def _check_compression(compress_type, compress_level):
    """Check the specified compression type and level are valid"""

    _check_compress_type(compress_type)

    if compress_level is None:
        return

    if compress_type in (ZIP_STORED, ZIP_LZMA):
        __log__.warning(
            "compress_level has no effect when using ZIP_STORED/ZIP_LZMA"
        )
    elif compress_type == ZIP_DEFLATED:
        if not 0 <= compress_level <= 9:
            raise ValueError(
                "compress_level must be between 0 and 9 when using ZIP_DEFLATED"
            )
    elif compress_type == ZIP_BZIP2:
        if not 1 <= compress_level <= 9:
            raise ValueError(
                "compress_level must be between 1 and 9 when using ZIP_BZIP2"
            )


def _min_version_for_compress_type(compress_type, min_version=0):
    """Ensure the compress_type is supported by the min_version"""
    if compress_type == ZIP_BZIP2:
        min_version = max(BZIP2_VERSION, min_version)
    elif compress_type == ZIP_LZMA:
        min_version = max(LZMA_VERSION, min_version)
    return min_version


def _timestamp_to_dos(ts):
    """Takes a date_time tuple and converts it to a (dosdate, dostime) tuple"""
    return (
        (ts[0] - 1980) << 9 | ts[1] << 5 | ts[2],
        ts[3] << 11 | ts[4] << 5 | (ts[5] // 2)
    )


def _clamp_date_time(timestamp):
    """Convert a timestamp (None for now) into a date_time tuple clamped to
    the range that the zip format supports"""
    date_time = time.localtime(timestamp)[0:6]
    if not (MIN_DATE <= date_time <= MAX_DATE):
        __log__.warning(
            "Date of %s is outside of the supported range for zip files "
            "and was automatically adjusted",
            date_time
        )
        date_time = min(max(MIN_DATE, date_time), MAX_DATE)
    return date_time


class ZipEntryInfo:
    """A ZipInfo-like class describing a single entry written by a ZipWriter

    Stored entries with a known size are written without a data descriptor:
    their local header lists the expected size and the CRC (which can only be
    known once all the data has been read) is recorded in the central
    directory. This keeps the size of the archive exactly predictable from
    the expected sizes of its entries (see `estimate`).

    Note that these entries still have the data descriptor flag set (a CRC of
    0 in the local header would otherwise be taken as the real one) even
    though no descriptor follows their data. Readers that only trust the
    central directory (Python's zipfile, 7-Zip, most browsers and OS
    extractors) handle this fine but strict readers do not: Info-ZIP's
    `unzip` reports "overlapped components" and streaming readers like
    `bsdtar` reading from a pipe lose track of the entry boundaries. Pass
    `data_descriptor=True` to produce fully conforming entries at the cost of
    16 extra bytes per file.

    All other files (unknown size or compressed) are followed by a data
    descriptor holding their CRC and sizes.
    """

    __slots__ = (
        "arcname",
        "date_time",
        "compress_type",
        "compress_level",
        "extract_version",
        "flag_bits",
        "external_attr",
        "header_offset",
        "CRC",
        "compress_size",
        "file_size",
        "expected_size",
        "use_descriptor",
    )

    def __init__(self, arcname, *, size=None, timestamp=None, compress_type=ZIP_STORED, compress_level=None, data_descriptor=False):
        if not (arcname or "").rstrip("/"):
            raise ValueError("A valid arcname is required")

        self.flag_bits = 0                      # ZIP flag bits
        self.filename = arcname                 # Normalized file name (sets arcname and utf8 flag bit if needed)
        self.date_time = _clamp_date_time(timestamp)
        self.compress_type = compress_type      # Type of compression for the file
        self.compress_level = compress_level    # Level for the compressor
        self.extract_version = DEFAULT_VERSION  # Version needed to extract file
        self.expected_size = size               # Size the data is expected to be
        self.compress_size = None               # Size of the compressed file
        self.file_size = None                   # Size of the uncompressed file
        self.CRC = None                         # CRC of the uncompressed file
        self.header_offset = None               # The offset of the FileHeader in the stream
        self.use_descriptor = False             # If a data descriptor follows the data

        if self.is_dir():
            self.external_attr = DIRECTORY_MODE << 16 | _FLAG_IS_DIRECTORY
            # We know the file header data, no need to use the data descriptor
            self.CRC = 0
            self.compress_size = 0
            self.file_size = 0
            self.expected_size = 0
            # No compression for dirs
            self.compress_type = ZIP_STORED
        else:
            self.external_attr = FILE_MODE << 16
            # The CRC is never known up front, readers have to get it (and
            # the actual sizes) from the central directory or data descriptor
            self.flag_bits |= _FLAG_DATA_DESCRIPTOR
            self.use_descriptor = data_descriptor or compress_type != ZIP_STORED or size is None

        # Process special cases for compression types
        self.extract_version = _min_version_for_compress_type(self.compress_type, DEFAULT_VERSION)
        if self.compress_type == ZIP_STORED:
            self.compress_level = None
        elif self.compress_type == ZIP_LZMA:
            self.compress_level = None
            # Compressed LZMA data includes an end-of-stream (EOS) marker
            self.flag_bits |= _FLAG_LZMA_EOS_MARKER

    @property
    def create_version(self):
        # always set to the same as the extract version
        return self.extract_version

    @property
    def filename(self):
        return self.arcname.decode(
            "utf-8" if self.flag_bits & _FLAG_UTF8_FILENAME else "ascii"
        )

    @filename.setter
    def filename(self, value):
        try:
            self.arcname = value.encode("ascii")
            self.flag_bits &= ~_FLAG_UTF8_FILENAME
        except UnicodeEncodeError:
            self.arcname = value.encode("utf-8")
            self.flag_bits |= _FLAG_UTF8_FILENAME

    def is_dir(self):
        """Return True if this archive member is a directory"""
        return self.arcname[-1] == 47  # "/" in both utf-8 and ascii

    def DataDescriptor(self):
        """Return the data descriptor for the file entry"""
        return struct.pack(
            "<4sLLL",
            b"PK\x07\x08",  # Data descriptor signature
            self.CRC,
            self.compress_size,
            self.file_size
        )

    def FileHeader(self):
        """Return the per-file header as bytes"""
        # Based on code in zipfile.ZipInfo.FileHeader
        dosdate, dostime = _timestamp_to_dos(self.date_time)
        if self.is_dir():
            CRC = compress_size = file_size = 0
        elif self.use_descriptor:
            # Sizes are written to the data descriptor instead
            CRC = compress_size = file_size = 0
        else:
            # Stored data - sizes are the same
            CRC = 0
            compress_size = file_size = self.expected_size

        header = struct.pack(
            structFileHeader,
            stringFileHeader,
            self.extract_version,
            0,  # reserved - must be 0
            self.flag_bits,
            self.compress_type,
            dostime,
            dosdate,
            CRC,
            compress_size,
            file_size,
            len(self.arcname),
            0,  # no extra data
        )
        return header + self.arcname

    def CentralDirectoryHeader(self):
        """Return a central directory file header for this file"""
        # Based on code in zipfile.ZipFile._write_end_record
        dosdate, dostime = _timestamp_to_dos(self.date_time)
        centdir = struct.pack(
            structCentralDir,
            stringCentralDir,
            self.create_version,
            CREATE_SYSTEM,
            self.extract_version,
            0,  # reserved - must be 0
            self.flag_bits,
            self.compress_type,
            dostime,
            dosdate,
            self.CRC,
            self.compress_size,
            self.file_size,
            len(self.arcname),
            0,  # no extra data
            0,  # no comment
            0,  # disk number this file begins on
            0,  # internal attributes - unused
            self.external_attr,
            self.header_offset
        )
        return centdir + self.arcname


def _validate_final(func):
    """Prevent the wrapped method from being called if the ZipWriter is closed"""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        if self._final:
            raise RuntimeError("ZipWriter has already been closed")
        return func(self, *args, **kwargs)

    return wrapper


class ZipWriter:
    """Writes a zip archive to a file-like object as entries are added

    Only the `write` method of the file-like object is required, it is never
    seeked. If it has a `flush` method it is called by `flush`.

    Archives requiring Zip64 extensions are not supported. Trying to write
    one raises an ArchiveTooLarge error before the offending data is written.

    If `data_descriptors` is True every file is followed by a data
    descriptor, see `ZipEntryInfo` for why that matters.
    """

    def __init__(self, fp, *, compress_type=ZIP_STORED, compress_level=None, data_descriptors=False):
        _check_compression(compress_type, compress_level)

        self._fp = fp
        self._data_descriptors = data_descriptors
        self._compress_type = compress_type
        self._compress_level = compress_level
        self._filelist = []
        self._pos = 0
        self._final = False

    @property
    def position(self):
        """The number of bytes written so far"""
        return self._pos

    def num_written(self):
        """The number of entries that have been written"""
        return len(self._filelist)

    def _write(self, data):
        self._fp.write(data)
        self._pos += len(data)

    def _new_entry(self, arcname, **kwargs):
        if len(self._filelist) >= ZIP_FILECOUNT_LIMIT:
            raise ArchiveTooLarge(
                "Archives with more than {} entries are not supported".format(
                    ZIP_FILECOUNT_LIMIT
                )
            )
        zinfo = ZipEntryInfo(arcname, **kwargs)
        zinfo.header_offset = self._pos
        return zinfo

    def _check_offset(self, zinfo, num_bytes):
        if self._pos + num_bytes > MAX_ZIP_SIZE:
            raise ArchiveTooLarge(
                "Adding '{}' would require using Zip64 extensions".format(
                    zinfo.filename
                )
            )

    @_validate_final
    def mkdir(self, arcname, *, timestamp=None):
        """Write a directory entry to the archive"""
        if not arcname.endswith("/"):
            arcname += "/"

        zinfo = self._new_entry(arcname, timestamp=timestamp)
        header = zinfo.FileHeader()
        self._check_offset(zinfo, len(header))
        self._write(header)
        self._filelist.append(zinfo)
        return zinfo

    @_validate_final
    def write_iter(self, arcname, iterable, *, size=None, timestamp=None, compress_type=None, compress_level=None):
        """Write a file entry to the archive with data from an iterable of bytes

        `size` (optional) is the number of bytes the iterable is expected to
        produce. When storing data, providing it means no data descriptor
        needs to be written after the data.

        If the iterable raises an exception the archive is left in an
        unusable state.
        """
        if arcname.endswith("/"):
            raise ValueError("Can't store data as a directory")

        if compress_type is None:
            compress_type = self._compress_type
        if compress_level is None:
            compress_level = self._compress_level
        _check_compression(compress_type, compress_level)

        zinfo = self._new_entry(
            arcname,
            size=size,
            timestamp=timestamp,
            compress_type=compress_type,
            compress_level=compress_level,
            data_descriptor=self._data_descriptors,
        )

        self._check_offset(zinfo, sizeFileHeader + len(zinfo.arcname) + (size or 0))
        header = zinfo.FileHeader()
        self._write(header)

        # Store/compress the data while keeping track of size and CRC
        cmpr = _get_compressor(zinfo.compress_type, zinfo.compress_level)
        crc = 0
        file_size = 0
        compress_size = 0

        for buf in iterable:
            file_size += len(buf)
            crc = crc32(buf, crc) & 0xFFFFFFFF
            if cmpr:
                buf = cmpr.compress(buf)
            if buf:
                compress_size += len(buf)
                self._check_offset(zinfo, len(buf))
                self._write(buf)

        if cmpr:
            buf = cmpr.flush()
            if buf:
                compress_size += len(buf)
                self._check_offset(zinfo, len(buf))
                self._write(buf)

        # Update the CRC and filesize info
        zinfo.CRC = crc
        zinfo.file_size = file_size
        zinfo.compress_size = compress_size

        if zinfo.use_descriptor:
            descriptor = zinfo.DataDescriptor()
            self._check_offset(zinfo, len(descriptor))
            self._write(descriptor)
        elif size != file_size:
            # The local header now lists the wrong size. The archive is still
            # readable using the central directory but its length no longer
            # matches the calculated size.
            __log__.warning(
                "Size mismatch when adding data for '%s' (expected %d bytes, got %d)",
                zinfo.filename,
                size,
                file_size
            )

        self._filelist.append(zinfo)
        return zinfo

    def flush(self):
        """Flush the underlying file-like object if it supports it"""
        flush = getattr(self._fp, "flush", None)
        if flush is not None:
            flush()

    def close(self):
        """Write the central directory and end of central directory records

        Does nothing if the ZipWriter has already been closed.
        """
        # Based on zipfile.ZipFile._write_end_record
        if self._final:
            return

        # Mark the ZipWriter as finalized so no other data can be added to it
        self._final = True

        centDirOffset = self._pos
        centDirCount = len(self._filelist)
        centDirSize = sum(sizeCentralDir + len(x.arcname) for x in self._filelist)
        if centDirSize > MAX_ZIP_SIZE:
            raise ArchiveTooLarge(
                "The central directory would require using Zip64 extensions"
            )

        # Write central directory file headers
        for zinfo in self._filelist:
            self._write(zinfo.CentralDirectoryHeader())

        endRec = struct.pack(
            structEndArchive,
            stringEndArchive,
            0,  # disk number this record is on
            0,  # disk number that contains the start of the central directory
            centDirCount,
            centDirCount,
            centDirSize,
            centDirOffset,
            0,  # no comment
        )
        self._write(endRec)
        self.flush()


class SizeBreakdown(collections.namedtuple(
    "SizeBreakdown",
    ["local_headers", "file_data", "central_directory", "end_of_central_directory"]
)):
    """The number of bytes each region of an archive takes up"""

    __slots__ = ()

    @property
    def total(self):
        return sum(self)


def estimate(members, *, data_descriptors=False):
    """Calculate the size of the stored archive made up of the members

    Matches what a ZipWriter produces when storing (not compressing) the
    members, assuming each file member produces exactly `size` bytes. File
    members with an unknown size are counted as empty.

    `data_descriptors` must match the ZipWriter option of the same name. The
    descriptors are counted as part of the file data.

    Raises ArchiveTooLarge if the archive would require Zip64 extensions.
    """
    num_files = 0
    num_unknown = 0
    local_headers = 0
    file_data = 0
    central_directory = 0

    for member in members:
        arcname_len = len(member.arcname)

        # FileHeader
        local_headers += sizeFileHeader + arcname_len  # 30 + name len

        # Folders don't have any data
        if not member.is_dir():
            if member.size is None:
                __log__.debug("Size of '%s' is unknown", member.zip_path)
                num_unknown += 1
            else:
                file_data += member.size
            if data_descriptors:
                file_data += sizeDataDescriptor

        central_directory += sizeCentralDir + arcname_len  # 46 + name len
        num_files += 1

    if (
        num_files > ZIP_FILECOUNT_LIMIT or
        local_headers + file_data > MAX_ZIP_SIZE or
        central_directory > MAX_ZIP_SIZE
    ):
        raise ArchiveTooLarge("The archive would require using Zip64 extensions")

    if num_unknown:
        __log__.warning(
            "Sizes of %d files are unknown, the calculated archive size will be too small",
            num_unknown
        )

    return SizeBreakdown(
        local_headers,
        file_data,
        central_directory,
        sizeEndCentDir,  # 22, no comment
    )
