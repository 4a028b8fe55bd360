#!/usr/bin/env python

"""Streaming remote files into a zip archive as they are downloaded"""

import collections
import logging
import urllib.parse

import requests

from zipfetch.archive import ZIP_STORED, ZipWriter
from zipfetch.entries import UrlGuard, check_fetch_url
from zipfetch.errors import AllMembersFailed, InvalidMember


# Size of chunks to read out of responses
READ_BUFFER = 1024 * 64  # 64K

# Most redirects to follow when fetching a file
MAX_REDIRECTS = 10


__all__ = ["ZipStreamer", "StreamSummary", "stream"]

__log__ = logging.getLogger(__name__)


StreamSummary = collections.namedtuple("StreamSummary", ["written", "skipped"])


class ZipStreamer:
    """Writes a zip archive of remote files to a file-like object

    Members are processed one at a time in the order they were given. Each
    file member is downloaded and written to the archive as the data arrives
    and the output is flushed after every member so that clients receive the
    archive while it's being built.

    Members that can't be downloaded (connection errors, non-2xx responses,
    redirects to URLs the guard doesn't allow) are left out of the archive.
    Any error writing the archive (including the download failing partway
    through) is raised immediately and leaves the output truncated.
    """

    def __init__(self, members, sink, *, session=None, guard=None, compress_type=ZIP_STORED, compress_level=None, data_descriptors=False, timeout=None):
        """Create a ZipStreamer

        members:
            A Descriptor or an iterable of DirectoryMarker/FileEntry members.

        sink:
            A file-like object to write the archive to. Only `write` is
            required. If it has a `flush` method, it is called after every
            member is written.

        session:
            The `requests.Session` to download files with. A new one is
            created (and closed afterwards) for each call to `stream` if not
            provided.

        guard:
            The UrlGuard that redirects are checked against. Redirects to URLs
            it doesn't allow are treated as failed downloads. The default
            allows any http(s) URL.

        compress_type, compress_level:
            How to store the files. The default (ZIP_STORED) is the only one
            that produces archives with a size that can be calculated ahead
            of time (see `zipfetch.estimate`).

        data_descriptors:
            Write a data descriptor after every file (see
            `zipfetch.ZipWriter`). Pass the same value to `zipfetch.estimate`.

        timeout:
            Passed to `requests` for every download. The default (None)
            waits forever.
        """
        self._members = list(members)
        self._sink = sink
        self._session = session
        self._guard = guard if guard is not None else UrlGuard()
        self._compress_type = compress_type
        self._compress_level = compress_level
        self._data_descriptors = data_descriptors
        self._timeout = timeout

    def stream(self):
        """Download all the members and write the archive

        Returns a StreamSummary with the number of members written and
        skipped.

        Raises AllMembersFailed if no members were written. The (empty)
        archive is still completed in this case.
        """
        writer = ZipWriter(
            self._sink,
            compress_type=self._compress_type,
            compress_level=self._compress_level,
            data_descriptors=self._data_descriptors
        )

        session = self._session
        if session is None:
            session = requests.Session()

        written = 0
        skipped = 0
        try:
            for member in self._members:
                if member.is_dir():
                    __log__.debug("Adding directory '%s'", member.zip_path)
                    writer.mkdir(member.zip_path)
                elif not self._write_file(writer, session, member):
                    skipped += 1
                    continue

                writer.flush()
                written += 1
        finally:
            if self._session is None:
                session.close()

        writer.close()

        if not written:
            raise AllMembersFailed(
                "All {} members failed to be added to the archive".format(skipped)
            )
        return StreamSummary(written, skipped)

    def _write_file(self, writer, session, member):
        """Download a file member into the archive

        Returns False if the file couldn't be downloaded.
        """
        try:
            resp = self._fetch(session, member.url)
        except (requests.RequestException, InvalidMember) as e:
            __log__.warning("Skipping '%s': failed to fetch %s (%s)", member.zip_path, member.url, e)
            return False

        with resp:
            if not 200 <= resp.status_code < 300:
                __log__.warning(
                    "Skipping '%s': fetching %s returned HTTP %d",
                    member.zip_path,
                    member.url,
                    resp.status_code
                )
                return False

            __log__.debug("Adding '%s' from %s", member.zip_path, member.url)
            writer.write_iter(
                member.zip_path,
                resp.iter_content(READ_BUFFER),
                size=member.size,
            )
        return True

    def _fetch(self, session, url):
        """Request `url`, only following redirects that the guard allows"""
        for _ in range(MAX_REDIRECTS + 1):
            resp = session.get(url, stream=True, timeout=self._timeout, allow_redirects=False)
            if not resp.is_redirect:
                return resp

            resp.close()
            location = urllib.parse.urljoin(url, resp.headers["Location"])
            __log__.debug("Following redirect from %s to %s", url, location)
            check_fetch_url(location, self._guard)
            url = location

        raise requests.TooManyRedirects(
            "Exceeded {} redirects".format(MAX_REDIRECTS)
        )


def stream(members, sink, **kwargs):
    """Write a zip archive of the members to the sink

    Convenience function for `ZipStreamer(members, sink, **kwargs).stream()`
    """
    return ZipStreamer(members, sink, **kwargs).stream()
