#!/usr/bin/env python

"""Exceptions raised by zipfetch"""


class ZipFetchError(Exception):
    """Base class for all zipfetch errors"""


class InvalidMember(ZipFetchError, ValueError):
    """An archive member failed validation"""


class InvalidPath(InvalidMember):
    """The path of a member inside the archive is absolute or escapes the root"""


class InvalidUrl(InvalidMember):
    """The URL of a file member is not an absolute http(s) URL"""


class UrlNotAllowed(InvalidMember):
    """The URL of a file member is outside of the allowed prefix"""


class InvalidManifest(ZipFetchError, ValueError):
    """A manifest could not be parsed"""


class AllMembersFailed(ZipFetchError):
    """No member could be written to the archive"""


class ArchiveTooLarge(ZipFetchError):
    """The archive would need Zip64 extensions, which are not supported"""


class ListingError(ZipFetchError):
    """A folder listing could not be retrieved"""
