"""Workspace path, URI and glob utilities for the Volt Language Client."""

import logging
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Pattern
from urllib.parse import unquote, urlparse


def path_to_uri(path: str) -> str:
    """Convert a file path to a file URI.

    Args:
        path: File path to convert.

    Returns:
        File URI.
    """
    return Path(os.path.abspath(path)).as_uri()


def uri_to_path(uri: str) -> str:
    """Convert a file URI to a file path.

    Args:
        uri: File URI to convert.

    Returns:
        File path. Non-file URIs are returned unchanged.
    """
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return uri

    path = unquote(parsed.path)
    # file:///C:/dir -> C:/dir
    if re.match(r"^/[A-Za-z]:", path):
        path = path[1:]
    return os.path.normpath(path)


def uri_scheme(uri: str) -> str:
    """Return the scheme of a URI, or "file" for plain paths."""
    scheme = urlparse(uri).scheme
    # Single letters are Windows drive letters, not schemes
    return scheme if len(scheme) > 1 else "file"


@lru_cache(maxsize=128)
def compile_glob(pattern: str) -> Pattern[str]:
    """Translate a workspace glob into a regular expression.

    Supports ``*`` (within a path segment), ``**`` (any number of segments),
    ``?``, ``[...]`` character classes and ``{a,b}`` alternatives.

    Args:
        pattern: Glob using forward slashes.

    Returns:
        Compiled regular expression matching whole relative paths.
    """
    parts: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if pattern.startswith("/", i):
                    i += 1
                    parts.append("(?:.*/)?")
                else:
                    parts.append(".*")
                continue
            parts.append("[^/]*")
        elif c == "?":
            parts.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(c))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                parts.append(f"[{body}]")
                i = end
        elif c == "{":
            end = pattern.find("}", i + 1)
            if end == -1:
                parts.append(re.escape(c))
            else:
                alternatives = pattern[i + 1:end].split(",")
                parts.append("(?:" + "|".join(re.escape(a) for a in alternatives) + ")")
                i = end
        else:
            parts.append(re.escape(c))
        i += 1

    return re.compile("^" + "".join(parts) + "$")


def match_glob(pattern: str, path: str) -> bool:
    """Check a slash-separated path against a glob."""
    return compile_glob(pattern).match(path.replace(os.sep, "/")) is not None


class Workspace:
    """Resolves documents and file events against the workspace root."""

    def __init__(self, workspace_path: str):
        """Initialize the workspace.

        Args:
            workspace_path: Path to the workspace directory.
        """
        self.workspace_path = os.path.abspath(workspace_path)
        self.logger = logging.getLogger("vlsclient.workspace")

        if not os.path.isdir(self.workspace_path):
            raise ValueError(f"Workspace path is not a directory: {self.workspace_path}")

    @property
    def uri(self) -> str:
        return path_to_uri(self.workspace_path)

    @property
    def name(self) -> str:
        return os.path.basename(self.workspace_path)

    def contains(self, file_path: str) -> bool:
        """Check if a file is inside the workspace.

        Args:
            file_path: Path to the file to check.

        Returns:
            True if the file is in the workspace, False otherwise.
        """
        abs_path = os.path.abspath(file_path)
        return os.path.commonpath([abs_path, self.workspace_path]) == self.workspace_path

    def relative_path(self, file_path: str) -> Optional[str]:
        """Return the slash-separated path of a file relative to the root.

        Args:
            file_path: Path of a file, absolute or relative to the root.

        Returns:
            The relative path, or None if the file is outside the workspace.
        """
        abs_path = os.path.join(self.workspace_path, file_path)
        if not self.contains(abs_path):
            return None
        return os.path.relpath(abs_path, self.workspace_path).replace(os.sep, "/")

    def matches(self, pattern: str, uri_or_path: str) -> bool:
        """Check whether a file in the workspace matches a glob.

        Args:
            pattern: Workspace glob such as ``**/*.volt``.
            uri_or_path: File URI or path.

        Returns:
            True if the file lies in the workspace and matches the glob.
        """
        relative = self.relative_path(uri_to_path(uri_or_path))
        if relative is None:
            return False
        return match_glob(pattern, relative)

    def find_files(self, pattern: str) -> List[str]:
        """List the files under the root that match a glob.

        Args:
            pattern: Workspace glob.

        Returns:
            Sorted absolute file paths.
        """
        found = []
        for root, _, files in os.walk(self.workspace_path):
            for file in files:
                file_path = os.path.join(root, file)
                if match_glob(pattern, os.path.relpath(file_path, self.workspace_path)):
                    found.append(file_path)
        self.logger.debug(f"Found {len(found)} files matching {pattern} in {self.workspace_path}")
        return sorted(found)
