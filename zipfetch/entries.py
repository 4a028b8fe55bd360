#!/usr/bin/env python

"""Validated archive members and the URL allow-list they are checked against"""

import collections
import logging
import os
import posixpath
import urllib.parse

from zipfetch.errors import InvalidMember, InvalidPath, InvalidUrl, UrlNotAllowed


# Environment variable holding the allowed URL prefix
URL_PREFIX_ENV_VAR = "ZS_URL_PREFIX"

# Schemes that file members can be fetched with
ALLOWED_SCHEMES = ("http", "https")

# Characters that are to be considered path separators on the current platform
# (includes "/" regardless of platform as per ZIP format specification)
PATH_SEPARATORS = set(x for x in (os.sep, os.altsep, "/") if x)


__all__ = [
    "UrlGuard", "DirectoryMarker", "FileEntry",
    "make_member", "clean_zip_path", "check_fetch_url",
    "URL_PREFIX_ENV_VAR",
]

__log__ = logging.getLogger(__name__)


class UrlGuard:
    """Restricts the URLs that file members can be fetched from to the ones
    starting with a configured prefix.

    Without this anyone able to submit a manifest could use the server to
    fetch and relay arbitrary URLs. An empty prefix allows every http(s) URL.
    """

    __slots__ = ("_prefix",)

    def __init__(self, prefix=""):
        if prefix is None:
            prefix = ""
        if not isinstance(prefix, str):
            raise TypeError(
                "Expected str, got {}".format(type(prefix).__name__)
            )
        self._prefix = prefix

    @classmethod
    def from_env(cls, environ=None):
        """Create a guard from the `ZS_URL_PREFIX` environment variable"""
        if environ is None:
            environ = os.environ
        return cls(environ.get(URL_PREFIX_ENV_VAR, ""))

    @property
    def prefix(self):
        return self._prefix

    def allows(self, url):
        """Return True if the url starts with the allowed prefix"""
        return url.startswith(self._prefix)

    def check(self, url):
        """Raise UrlNotAllowed if the url is outside of the allowed prefix"""
        if not self.allows(url):
            raise UrlNotAllowed("URL not allowed: '{}'".format(url))

    def __repr__(self):
        return "{}({!r})".format(type(self).__name__, self._prefix)


class DirectoryMarker(collections.namedtuple("DirectoryMarker", ["zip_path"])):
    """An empty directory inside the archive

    Use `make_member` to create instances, it validates the path.
    """

    __slots__ = ()

    url = None
    size = 0

    @property
    def arcname(self):
        """The name as stored in the archive"""
        return self.zip_path.encode("utf-8")

    def is_dir(self):
        return True


class FileEntry(collections.namedtuple("FileEntry", ["zip_path", "url", "size"])):
    """A file inside the archive whose data is fetched from `url`

    `size` is the number of bytes the URL is expected to produce, or None if
    it's unknown. Use `make_member` to create instances, it validates the
    path and the URL.
    """

    __slots__ = ()

    @property
    def arcname(self):
        """The name as stored in the archive"""
        return self.zip_path.encode("utf-8")

    def is_dir(self):
        return False


def clean_zip_path(zip_path):
    """Lexically clean a path inside the archive

    Returns the cleaned path, keeping a trailing "/" if the given path had
    one.

    Raises InvalidPath if the path is empty, absolute, or escapes the root of
    the archive.
    """
    if not isinstance(zip_path, str):
        raise InvalidPath("The zip path must be a string")

    # based on zipfile._sanitize_filename
    null_byte = zip_path.find(chr(0))
    if null_byte >= 0:
        zip_path = zip_path[:null_byte]

    for sep in PATH_SEPARATORS:
        if sep != "/":
            zip_path = zip_path.replace(sep, "/")

    is_dir = zip_path.endswith("/")
    cleaned = posixpath.normpath(zip_path) if zip_path else ""

    if posixpath.isabs(cleaned):
        raise InvalidPath("The zip path '{}' must be relative".format(zip_path))
    if cleaned in ("", ".") or cleaned == ".." or cleaned.startswith("../"):
        raise InvalidPath("The zip path '{}' is not valid".format(zip_path))

    if is_dir:
        cleaned += "/"
    return cleaned


def _check_url(url):
    if not isinstance(url, str) or not url:
        raise InvalidUrl("A URL is required for file members")
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError as e:
        raise InvalidUrl("Invalid URL '{}': {}".format(url, e)) from e
    if parts.scheme not in ALLOWED_SCHEMES or not parts.netloc:
        raise InvalidUrl("URL must be a http(s) URL: '{}'".format(url))


def check_fetch_url(url, guard):
    """Check that `url` is an absolute http(s) URL allowed by `guard`

    Raises InvalidUrl or UrlNotAllowed if it isn't.
    """
    _check_url(url)
    guard.check(url)


def make_member(url, zip_path, *, size=None, guard):
    """Validate and create an archive member

    If `zip_path` ends with a "/" a DirectoryMarker is created and `url` is
    ignored. Otherwise a FileEntry is created, which requires `url` to be an
    absolute http(s) URL allowed by `guard`.

    `size` (optional) is the expected size of the data at `url`. It is only
    used to calculate the size of the archive ahead of time.

    Raises InvalidPath, InvalidUrl, or UrlNotAllowed (all subclasses of
    InvalidMember) if validation fails.
    """
    zip_path = clean_zip_path(zip_path)
    if zip_path.endswith("/"):
        return DirectoryMarker(zip_path)

    check_fetch_url(url, guard)

    if size is not None and (
        isinstance(size, bool) or not isinstance(size, int) or size < 0
    ):
        raise InvalidMember(
            "Size of '{}' must be a non-negative integer".format(zip_path)
        )

    return FileEntry(zip_path, url, size)
