"""Scoped Info.plist edits."""

from __future__ import annotations

import logging
import plistlib
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

BUNDLE_IDENTIFIER_KEY = "CFBundleIdentifier"


@contextmanager
def bundle_identifier_override(plist_path: str | Path, bundle_id: str) -> Iterator[Path]:
    """Set CFBundleIdentifier for the duration of the block.

    The file keeps its original format (XML or binary). The original bytes
    are written back on exit, whether the block succeeds or raises.

    Raises:
        OSError: If the plist cannot be read or written
        plistlib.InvalidFileException: If the file is not a dictionary property list
        xml.parsers.expat.ExpatError: If an XML property list is malformed
        ValueError: If an XML property list has a value without a key
    """
    path = Path(plist_path)
    original = path.read_bytes()
    data = plistlib.loads(original)
    if not isinstance(data, dict):
        raise plistlib.InvalidFileException(f"{path.name}: root is not a dictionary")
    fmt = plistlib.FMT_BINARY if original.startswith(b"bplist") else plistlib.FMT_XML

    previous = data.get(BUNDLE_IDENTIFIER_KEY)
    data[BUNDLE_IDENTIFIER_KEY] = bundle_id
    path.write_bytes(plistlib.dumps(data, fmt=fmt))
    logger.info(f"{path.name}: {BUNDLE_IDENTIFIER_KEY} {previous} -> {bundle_id}")

    try:
        yield path
    finally:
        path.write_bytes(original)
        logger.debug(f"{path.name}: restored {BUNDLE_IDENTIFIER_KEY}")
