#!/usr/bin/env python

"""Parsing and serializing the JSON manifests that describe an archive"""

import json
import logging

from zipfetch.entries import make_member
from zipfetch.errors import InvalidManifest, InvalidMember


# Name to use when no usable filename was suggested
DEFAULT_FILENAME = "archive.zip"


__all__ = ["Descriptor", "DEFAULT_FILENAME"]

__log__ = logging.getLogger(__name__)


class Descriptor:
    """An ordered list of archive members and a suggested filename for the
    archive they make up.

    The JSON form is:

        {
          "suggestedFilename": "name.zip",
          "files": [
            {"url": "https://example.com/a.txt", "zipPath": "dir/a.txt"},
            {"url": "", "zipPath": "dir/empty/"}
          ]
        }

    Entries can optionally specify a "size" (in bytes) so the size of the
    archive can be calculated before streaming it.
    """

    def __init__(self, files=(), suggested_filename=""):
        self._files = tuple(files)
        self.suggested_filename_raw = suggested_filename or ""

    def __repr__(self):
        return "<{} {!r} ({} files)>".format(
            type(self).__name__,
            self.suggested_filename_raw,
            len(self._files)
        )

    def __len__(self):
        return len(self._files)

    def __iter__(self):
        return iter(self._files)

    def files(self):
        """The validated members, in archive order"""
        return list(self._files)

    def escaped_suggested_filename(self):
        """Return the suggested filename made safe for use in a
        Content-Disposition header.

        Only printable ASCII characters other than double quotes are kept and
        the name always ends in ".zip".
        """
        escaped = "".join(
            c for c in self.suggested_filename_raw
            if 31 < ord(c) < 127 and c != '"'
        )
        if not escaped or escaped == ".zip":
            return DEFAULT_FILENAME
        if escaped.endswith(".zip"):
            return escaped
        return escaped + ".zip"

    @classmethod
    def parse(cls, raw, *, guard):
        """Parse a JSON manifest into a Descriptor

        Entries that can't be turned into valid members (missing URLs,
        disallowed URLs, absolute paths, etc) are skipped.

        Raises InvalidManifest if the manifest itself is malformed.
        """
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = bytes(raw).decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidManifest("Manifest is not valid UTF-8") from e

        try:
            parsed = json.loads(raw)
        except ValueError as e:
            raise InvalidManifest("Manifest is not valid JSON: {}".format(e)) from e

        if not isinstance(parsed, dict):
            raise InvalidManifest("Manifest must be a JSON object")

        suggested_filename = parsed.get("suggestedFilename") or ""
        if not isinstance(suggested_filename, str):
            raise InvalidManifest("suggestedFilename must be a string")

        entries = parsed.get("files") or []
        if not isinstance(entries, list):
            raise InvalidManifest("files must be a list")

        files = []
        for entry in entries:
            if not isinstance(entry, dict):
                __log__.debug("Skipping manifest entry %r: not an object", entry)
                continue

            url = entry.get("url") or ""
            zip_path = entry.get("zipPath") or ""
            size = entry.get("size")
            if not isinstance(url, str) or not isinstance(zip_path, str):
                __log__.debug("Skipping manifest entry %r: invalid types", entry)
                continue

            # Only directories can be added without a URL
            if not url and not zip_path.endswith("/"):
                __log__.debug("Skipping manifest entry %r: no url", entry)
                continue

            try:
                files.append(make_member(url, zip_path, size=size, guard=guard))
            except InvalidMember as e:
                __log__.debug("Skipping manifest entry %r: %s", entry, e)

        return cls(files, suggested_filename)

    def to_dict(self):
        """Return the manifest form of the Descriptor"""
        files = []
        for member in self._files:
            entry = {"url": member.url or "", "zipPath": member.zip_path}
            if not member.is_dir() and member.size is not None:
                entry["size"] = member.size
            files.append(entry)

        return {
            "suggestedFilename": self.suggested_filename_raw,
            "files": files,
        }

    def to_json(self):
        """Serialize the Descriptor to a JSON manifest"""
        return json.dumps(self.to_dict())
