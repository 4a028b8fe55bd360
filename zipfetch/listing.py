#!/usr/bin/env python

"""Turning remote folder listings into archive members"""

import collections
import logging
import posixpath

import requests

from zipfetch.entries import make_member
from zipfetch.errors import InvalidMember, ListingError


# Default endpoint of the Premiumize.me API
PREMIUMIZE_API_URL = "https://www.premiumize.me/api"


__all__ = ["Listing", "ListingEntry", "PremiumizeLister", "walk"]

__log__ = logging.getLogger(__name__)


Listing = collections.namedtuple("Listing", ["name", "entries"])


class ListingEntry(collections.namedtuple(
    "ListingEntry",
    ["name", "type", "fetch_url", "size"]
)):
    """A single item in a folder listing

    `type` is "file" or "folder". Files have a `fetch_url` to download them
    from and (optionally) a `size`.
    """

    __slots__ = ()

    def __new__(cls, name, type, fetch_url=None, size=None):
        return super().__new__(cls, name, type, fetch_url, size)

    def is_folder(self):
        return self.type == "folder"


class PremiumizeLister:
    """Lists folders using the Premiumize.me `folder/list` API"""

    def __init__(self, api_key, *, session=None, base_url=PREMIUMIZE_API_URL, timeout=None):
        self._api_key = api_key
        self._session = session or requests.Session()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def list(self, path):
        """Return a Listing of the folder at `path`

        Raises a ListingError if the folder can't be listed.
        """
        try:
            resp = self._session.get(
                self._base_url + "/folder/list",
                params={"apikey": self._api_key, "path": path},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise ListingError("Failed to fetch folder contents of '{}': {}".format(path, e)) from e

        if resp.status_code != 200:
            raise ListingError(
                "Listing '{}' failed with HTTP {}".format(path, resp.status_code)
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ListingError("Invalid listing response for '{}'".format(path)) from e

        if not isinstance(data, dict) or data.get("status") != "success":
            raise ListingError(
                "Listing '{}' failed with status: {}".format(
                    path,
                    data.get("status") if isinstance(data, dict) else None
                )
            )

        entries = []
        for item in data.get("content") or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            entries.append(ListingEntry(
                item["name"],
                item.get("type"),
                item.get("directlink") or None,
                item.get("size"),
            ))
        return Listing(data.get("name") or posixpath.basename(path.rstrip("/")), entries)


def walk(lister, root, *, guard, preserve_empty=True):
    """Recursively list the folder at `root` and yield members for the files
    under it.

    Members are named relative to the parent of `root`, so listing
    "/downloads/show" yields members like "show/episode1.mkv" and
    "show/extras/trailer.mkv".

    preserve_empty:
        If True (the default), empty folders will be included as directory
        markers.

    Files that can't be turned into valid members (disallowed URLs, invalid
    names, etc) are skipped. Errors listing a folder are raised.
    """
    root = root.rstrip("/") or "/"
    yield from _walk(lister, root, posixpath.basename(root), guard, preserve_empty)


def _walk(lister, path, zip_dir, guard, preserve_empty):
    listing = lister.list(path)

    if preserve_empty and not listing.entries and zip_dir:
        try:
            yield make_member(None, zip_dir + "/", guard=guard)
        except InvalidMember as e:
            __log__.debug("Skipping empty folder '%s': %s", path, e)
        return

    for entry in listing.entries:
        zip_path = posixpath.join(zip_dir, entry.name)
        if entry.is_folder():
            yield from _walk(
                lister,
                posixpath.join(path, entry.name),
                zip_path,
                guard,
                preserve_empty
            )
        elif entry.type == "file":
            try:
                yield make_member(entry.fetch_url, zip_path, size=entry.size, guard=guard)
            except InvalidMember as e:
                __log__.debug("Skipping '%s': %s", zip_path, e)
        else:
            __log__.debug("Skipping '%s': unknown type %r", zip_path, entry.type)
