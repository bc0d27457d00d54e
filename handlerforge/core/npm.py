"""npm tarball helpers: descriptor parsing, local staging, and install.

Handler packages are published as ``npm pack`` tarballs: a gzipped tar whose
entries live under ``package/``, with the descriptor at
``package/package.json``.
"""

from __future__ import annotations

import io
import json
import logging
import os
import re
import subprocess
import tarfile
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO

from pydantic import ValidationError

from handlerforge.core.streams import CHUNK_SIZE, StreamPipe, tee_to_file
from handlerforge.models.packages import PackageInfo, TemporaryTarball

logger = logging.getLogger(__name__)

_PACKAGE_JSON = re.compile(r"^(\./)?package/package\.json$")


class InvalidTarballError(ValueError):
    """Raised when a stream is not a usable npm package tarball."""


def read_package_info(stream: BinaryIO) -> PackageInfo:
    """Parse ``package/package.json`` from a (gzipped) npm tarball stream.

    Reads sequentially and stops at the descriptor; the rest of the stream
    is left unread.
    """
    try:
        with tarfile.open(fileobj=stream, mode="r|*") as archive:
            for member in archive:
                if member.isfile() and _PACKAGE_JSON.match(member.name):
                    content = archive.extractfile(member)
                    if content is None:
                        break
                    return PackageInfo.model_validate(json.loads(content.read()))
    except (tarfile.TarError, json.JSONDecodeError, ValidationError) as exc:
        raise InvalidTarballError(f"Not a valid npm tarball: {exc}") from exc
    raise InvalidTarballError("Not a valid npm tarball, no package/package.json found")


def store_temporary_tarball(
    tarball_name: str, stream: BinaryIO, directory: Path
) -> TemporaryTarball:
    """Persist a tarball stream under ``directory`` and parse its descriptor.

    The stream is read once. A background pump writes every byte to the
    temporary file and also feeds the descriptor reader; the reader lets go
    as soon as it has ``package.json`` while the copy runs to completion.
    On failure the temporary file is removed.
    """
    fd, name = tempfile.mkstemp(suffix="npmpkg.tgz", dir=directory)
    os.close(fd)
    location = Path(name)

    pipe = StreamPipe()
    pump_errors: list[BaseException] = []

    def pump() -> None:
        try:
            tee_to_file(stream, location, pipe.writer)
        except BaseException as exc:
            pump_errors.append(exc)

    thread = threading.Thread(target=pump, name=f"tee-{tarball_name}", daemon=True)
    thread.start()
    reader = io.BufferedReader(pipe.reader, CHUNK_SIZE)
    try:
        try:
            info = read_package_info(reader)
        finally:
            reader.close()
            thread.join()
            close = getattr(stream, "close", None)
            if close is not None:
                close()
        if pump_errors:
            raise pump_errors[0]
    except BaseException:
        location.unlink(missing_ok=True)
        raise

    logger.debug(
        "Stored %s (%s@%s) at %s", tarball_name, info.name, info.version, location
    )
    return TemporaryTarball(tarball_name=tarball_name, location=location, info=info)


def npm_install(target_dir: Path, packages: list[Path]) -> None:
    """Install local package tarballs into ``target_dir/node_modules``.

    Runs ``npm install`` without lifecycle scripts or dev dependencies and
    records the packages as dependencies of the target package.
    """
    if not packages:
        return
    cmd = [
        "npm",
        "install",
        "--save",
        "--ignore-scripts",
        "--omit=dev",
        "--no-audit",
        "--no-fund",
        "--prefix",
        str(target_dir),
        *[str(p) for p in packages],
    ]
    logger.info("Installing %d package(s) into %s", len(packages), target_dir)
    result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    if result.stdout:
        logger.debug("npm: %s", result.stdout.strip())
