"""Unpack the contents of an npm package tarball into a fresh directory."""

from __future__ import annotations

import logging
import re
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import BinaryIO

from handlerforge.core.npm import InvalidTarballError

logger = logging.getLogger(__name__)

_PACKAGE_ENTRY = re.compile(r"^(\./)?package/(?P<path>.+)$")


def unpack_package(stream: BinaryIO, prefix: str = "handlerforge-unpack-") -> Path:
    """Extract the regular files under ``package/`` into a new temp directory.

    Entries outside ``package/`` and non-file entries are skipped. Returns
    the directory; the caller owns it. On failure it is removed again.
    """
    root = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        count = 0
        with tarfile.open(fileobj=stream, mode="r|*") as archive:
            for member in archive:
                match = _PACKAGE_ENTRY.match(member.name)
                if not member.isfile() or not match:
                    continue
                destination = (root / match.group("path")).resolve()
                if not destination.is_relative_to(root.resolve()):
                    raise InvalidTarballError(
                        f"Tarball entry escapes the package directory: {member.name}"
                    )
                destination.parent.mkdir(parents=True, exist_ok=True)
                content = archive.extractfile(member)
                if content is None:
                    continue
                with open(destination, "wb") as out:
                    shutil.copyfileobj(content, out)
                count += 1
    except BaseException:
        shutil.rmtree(root, ignore_errors=True)
        raise

    logger.debug("Unpacked %d file(s) into %s", count, root)
    return root
