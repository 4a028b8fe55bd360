#!/usr/bin/env python

"""
A small HTTP server that streams zip files of remote files to clients.

Endpoints:
  - `POST /download`: the body is a JSON manifest (see
    `zipfetch.Descriptor`) listing the files to add.
  - `GET /create-zip?apikey=KEY&paths=["/folder", ...]`: zips up the
    contents of Premiumize.me folders.

Only URLs starting with the `ZS_URL_PREFIX` environment variable (or the
`--url-prefix` option) can be added to archives.

Run `zipfetch-server --help` or `python -m zipfetch.server --help` for details
"""

import functools
from http import HTTPStatus
import http.server
import json
import logging
import urllib.parse

import requests

from zipfetch.archive import ZipWriter, estimate
from zipfetch.descriptor import Descriptor
from zipfetch.entries import UrlGuard
from zipfetch.errors import ArchiveTooLarge, InvalidManifest, ZipFetchError
from zipfetch.listing import PREMIUMIZE_API_URL, PremiumizeLister, walk
from zipfetch.streamer import ZipStreamer


# Largest manifest that will be accepted
MAX_MANIFEST_SIZE = 1024 * 1024 * 10  # 10M

__log__ = logging.getLogger(__name__)


class ZipFetchRequestHandler(http.server.BaseHTTPRequestHandler):
    """Streams zips of remote files

    `guard` is the UrlGuard that all the URLs (and redirects) are checked
    against, `timeout` is used for all upstream requests and `listing_url` is
    the base URL of the folder listing API. If `data_descriptors` is True
    every file in the zips is followed by a data descriptor.
    """

    def __init__(self, *args, guard, timeout=None, listing_url=PREMIUMIZE_API_URL, data_descriptors=False, **kwargs):
        self.guard = guard
        self.data_descriptors = data_descriptors
        self.timeout = timeout
        self.listing_url = listing_url
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        __log__.info("%s - %s", self.address_string(), format % args)

    def do_POST(self):
        """Return a zip of all the files in the posted manifest"""
        content_length = self._content_length()

        if urllib.parse.urlsplit(self.path).path != "/download":
            # Read the unused body so the client gets the response
            if content_length:
                self.rfile.read(content_length)
            self.send_error(HTTPStatus.NOT_FOUND)
            return

        if not content_length:
            self.send_error(HTTPStatus.BAD_REQUEST, "Invalid content length")
            return
        body = self.rfile.read(content_length)

        try:
            descriptor = Descriptor.parse(
                body,
                guard=self.guard
            )
        except InvalidManifest as e:
            self.send_error(HTTPStatus.BAD_REQUEST, str(e))
            return

        self.send_zip(descriptor.files(), descriptor.escaped_suggested_filename())

    def do_GET(self):
        """Return a zip of the contents of the requested folders"""
        url = urllib.parse.urlsplit(self.path)
        if url.path != "/create-zip":
            self.send_error(HTTPStatus.NOT_FOUND)
            return

        query = urllib.parse.parse_qs(url.query)
        api_key = (query.get("apikey") or [""])[0]
        paths_param = (query.get("paths") or [""])[0]
        if not api_key or not paths_param:
            self.send_error(HTTPStatus.BAD_REQUEST, "Missing API key or paths")
            return

        try:
            paths = json.loads(paths_param)
            if not isinstance(paths, list) or not all(isinstance(x, str) for x in paths):
                raise ValueError()
        except ValueError:
            self.send_error(HTTPStatus.BAD_REQUEST, "Invalid paths parameter")
            return

        lister = PremiumizeLister(
            api_key,
            base_url=self.listing_url,
            timeout=self.timeout
        )
        members = []
        for root in paths:
            __log__.info("Processing folder: %s", root)
            try:
                members.extend(walk(lister, root, guard=self.guard))
            except ZipFetchError as e:
                __log__.warning("Error processing %s: %s", root, e)

        self.send_zip(members, "archive.zip")

    def _content_length(self):
        """The length of the request body if it's acceptable, otherwise None"""
        try:
            content_length = int(self.headers.get("Content-Length"))
        except (ValueError, TypeError):
            return None
        if not 0 < content_length <= MAX_MANIFEST_SIZE:
            return None
        return content_length

    def do_PUT(self):
        self.send_error(HTTPStatus.METHOD_NOT_ALLOWED)

    do_DELETE = do_PATCH = do_PUT

    def send_zip(self, members, filename):
        """Send the members as a zip file"""

        # Don't try to stream an empty zip, just send one
        if not members:
            __log__.info("No files to add, returning an empty zip")
            self.send_zip_headers("empty.zip", estimate(members).total)
            ZipWriter(self.wfile).close()
            return

        try:
            size = estimate(members, data_descriptors=self.data_descriptors)
        except ArchiveTooLarge as e:
            self.send_error(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, str(e))
            return

        # The size of the zip is only known if the sizes of all the files are
        length = size.total
        if any(m.size is None for m in members if not m.is_dir()):
            length = None

        __log__.info(
            "Streaming %d members as '%s' (%s bytes: %d in headers, %d of file "
            "data, %d in the central directory)",
            len(members),
            filename,
            "unknown" if length is None else length,
            size.local_headers,
            size.file_data,
            size.central_directory + size.end_of_central_directory
        )

        # When the size of the zip is known ahead of time, send it in the
        # "Content-Length" header so clients can show download progress.
        # Otherwise closing the connection marks the end of the zip.
        self.send_zip_headers(filename, length)
        if length is None:
            self.close_connection = True

        # Any failure from here on can't be reported to the client since the
        # headers are already sent. Drop the connection so the client knows
        # the download is incomplete.
        with requests.Session() as session:
            try:
                summary = ZipStreamer(
                    members,
                    self.wfile,
                    session=session,
                    guard=self.guard,
                    data_descriptors=self.data_descriptors,
                    timeout=self.timeout
                ).stream()
            except (OSError, requests.RequestException, ZipFetchError) as e:
                __log__.error("Failed to stream '%s': %s", filename, e)
                self.close_connection = True
                return

        __log__.info(
            "Finished streaming '%s' (%d written, %d skipped)",
            filename,
            summary.written,
            summary.skipped
        )
        if summary.skipped:
            # Content-Length overstated the size of the zip
            self.close_connection = True

    def send_zip_headers(self, filename, length):
        """Send the headers for a zip download

        The "Content-Length" header is left out if `length` is None.
        """
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "application/zip")
        self.send_header(
            "Content-Disposition",
            'attachment; filename="{}"'.format(filename)
        )
        if length is not None:
            self.send_header("Content-Length", str(length))
        # The archive is generated on the fly, it can't be resumed
        self.send_header("Accept-Ranges", "none")
        self.end_headers()


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description=(
        "Server that streams zip files of remote files without storing them."
    ))
    parser.add_argument(
        "--bind", "-b",
        metavar="ADDRESS",
        help="Specify alternate bind address [default: all interfaces]"
    )
    parser.add_argument(
        "--url-prefix",
        default=None,
        help=(
            "Only allow adding files from URLs starting with this prefix "
            "[default: $ZS_URL_PREFIX]"
        )
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Timeout in seconds for upstream requests [default: none]"
    )
    parser.add_argument(
        "--listing-url",
        default=PREMIUMIZE_API_URL,
        help="Base URL of the folder listing API [default: %(default)s]"
    )
    parser.add_argument(
        "--data-descriptors",
        action="store_true",
        help=(
            "Write a data descriptor after every file. Needed by strict zip "
            "readers like Info-ZIP unzip, adds 16 bytes per file"
        )
    )
    parser.add_argument(
        "port",
        action="store",
        default=8000,
        type=int,
        nargs="?",
        help="Specify alternate port [default: 8000]"
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    if args.url_prefix is None:
        guard = UrlGuard.from_env()
    else:
        guard = UrlGuard(args.url_prefix)
    if not guard.prefix:
        __log__.warning("No URL prefix configured, files can be added from any URL")

    http.server.test(
        HandlerClass=functools.partial(
            ZipFetchRequestHandler,
            guard=guard,
            timeout=args.timeout,
            listing_url=args.listing_url,
            data_descriptors=args.data_descriptors
        ),
        ServerClass=http.server.ThreadingHTTPServer,
        port=args.port,
        bind=args.bind
    )


if __name__ == "__main__":
    main()
