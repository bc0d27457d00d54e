"""Build the deployable zip: base runtime package + installed handlers.

Packaging sequence, run in the background once ``produce_archive_stream()``
is called:

1. unpack the base package            } in parallel
2. wait for every staged handler      }
3. ``npm install`` the handlers        } in parallel
4. write the handler manifest file     }
5. zip the package directory straight into the returned stream
6. remove the unpacked directory (best effort)

The caller gets the stream immediately. Whether packaging succeeded is only
known by reading the stream to its end: a failure surfaces as an exception
from ``read``.
"""

from __future__ import annotations

import io
import json
import logging
import shutil
import tempfile
import threading
import zipfile
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from handlerforge.core.npm import InvalidTarballError, npm_install, store_temporary_tarball
from handlerforge.core.streams import CHUNK_SIZE, PipeReader, PipeWriter, StreamPipe
from handlerforge.core.unpack import unpack_package
from handlerforge.models.packages import ArtifactManifest, PackageInfo, TemporaryTarball

if TYPE_CHECKING:
    from handlerforge.core.version_ledger import VersionLedger

logger = logging.getLogger(__name__)


class DuplicateTarballError(RuntimeError):
    """Raised when two tarballs with the same name are added to one build."""


class ArchiveStream(io.BufferedReader):
    """The zip being produced, readable as a regular binary file.

    ``manifest`` resolves to the ``ArtifactManifest`` once the whole archive
    has been written, or to the packaging error.
    """

    def __init__(self, raw: PipeReader, manifest: Future[ArtifactManifest]) -> None:
        super().__init__(raw, buffer_size=CHUNK_SIZE)
        self.manifest = manifest


def read_package_descriptor(package_dir: Path) -> PackageInfo:
    """Load ``package.json`` from an unpacked package directory."""
    descriptor = package_dir / "package.json"
    if not descriptor.is_file():
        raise InvalidTarballError(f"No package.json in base package at {package_dir}")
    return PackageInfo.model_validate_json(descriptor.read_text(encoding="utf-8"))


def zip_directory(directory: Path, out: BinaryIO) -> int:
    """Write all regular files below ``directory`` to ``out`` as a zip.

    ``out`` need not be seekable. Returns the number of files written.
    """
    count = 0
    with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(directory.rglob("*")):
            if path.is_file():
                archive.write(path, arcname=path.relative_to(directory).as_posix())
                count += 1
    return count


class ArtifactBuilder:
    """Assembles one deployment archive.

    Parameters
    ----------
    open_base_package:
        Returns a fresh binary stream of the base package tarball.
    install:
        Installs local tarballs into a package directory; ``npm_install``
        by default.
    manifest_file_name:
        Name of the JSON file listing installed handler package names.
    max_workers:
        Size of the worker pool used for staging and packaging.
    """

    def __init__(
        self,
        open_base_package: Callable[[], BinaryIO],
        install: Callable[[Path, list[Path]], None] = npm_install,
        *,
        manifest_file_name: str = "handlerFactories.json",
        max_workers: int | None = None,
    ) -> None:
        self._open_base_package = open_base_package
        self._install = install
        self._manifest_file_name = manifest_file_name
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="artifact-builder"
        )
        self._staging_dir: Path | None = None
        self._staged: list[tuple[str, Future[TemporaryTarball]]] = []
        self._archive: ArchiveStream | None = None
        self._producer: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Staging handler tarballs
    # ------------------------------------------------------------------

    def _staging_directory(self) -> Path:
        if self._staging_dir is None:
            self._staging_dir = Path(tempfile.mkdtemp(prefix="handlerforge-tarballs-"))
        return self._staging_dir

    def add_tarball_stream(self, name: str, stream: BinaryIO) -> None:
        """Stage a handler tarball. Persisting and parsing start right away."""
        if any(staged.lower() == name.lower() for staged, _ in self._staged):
            raise DuplicateTarballError(f"A tarball with name {name} was already added")

        future = self._pool.submit(
            store_temporary_tarball, name, stream, self._staging_directory()
        )
        self._staged.append((name, future))
        logger.debug("Staging tarball %s", name)

    def add_tarball(self, tarball: VersionLedger) -> None:
        """Stage the latest version of a repository tarball."""
        self.add_tarball_stream(tarball.name, tarball.open_stream())

    @property
    def tarball_names(self) -> list[str]:
        return [name for name, _ in self._staged]

    # ------------------------------------------------------------------
    # Producing the archive
    # ------------------------------------------------------------------

    def produce_archive_stream(self) -> ArchiveStream:
        """Start packaging in the background and return the zip stream."""
        if self._archive is not None:
            raise RuntimeError("The archive stream was already produced")

        pipe = StreamPipe()
        manifest: Future[ArtifactManifest] = Future()
        self._archive = ArchiveStream(pipe.reader, manifest)
        staged = [future for _, future in self._staged]

        self._producer = threading.Thread(
            target=self._package_and_zip,
            args=(staged, pipe.writer, manifest),
            name="artifact-producer",
            daemon=True,
        )
        self._producer.start()
        return self._archive

    def _package_and_zip(
        self,
        staged: list[Future[TemporaryTarball]],
        writer: PipeWriter,
        manifest: Future[ArtifactManifest],
    ) -> None:
        package_dir: Path | None = None
        try:
            unpacked = self._pool.submit(self._unpack_base_package)
            wait([unpacked, *staged])
            package_dir = unpacked.result()
            tarballs = [future.result() for future in staged]

            info = read_package_descriptor(package_dir)
            handlers = [t.info.name for t in tarballs]

            installed = self._pool.submit(
                self._install, package_dir, [t.location for t in tarballs]
            )
            try:
                (package_dir / self._manifest_file_name).write_text(
                    json.dumps(handlers), encoding="utf-8"
                )
            finally:
                wait([installed])
            installed.result()

            count = zip_directory(package_dir, writer)
            logger.info(
                "Packaged %s@%s with %d handler(s), %d file(s)",
                info.name,
                info.version,
                len(handlers),
                count,
            )
            manifest.set_result(ArtifactManifest(package=info, handlers=handlers))
            writer.close()
        except BaseException as exc:
            logger.error("Packaging failed: %s", exc)
            if not manifest.done():
                manifest.set_exception(exc)
            writer.fail(exc)
        finally:
            if package_dir is not None:
                try:
                    shutil.rmtree(package_dir)
                except OSError as exc:
                    logger.warning("Could not remove %s: %s", package_dir, exc)

    def _unpack_base_package(self) -> Path:
        with self._open_base_package() as stream:
            return unpack_package(stream)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        """Release every temporary resource of this build.

        Outcomes of staged tarballs are awaited and discarded; individual
        failures do not stop the cleanup. Safe to call at any point.
        """
        try:
            archive, self._archive = self._archive, None
            if archive is not None:
                archive.close()

            staged, self._staged = self._staged, []
            wait([future for _, future in staged])

            producer, self._producer = self._producer, None
            if producer is not None:
                producer.join()

            directory, self._staging_dir = self._staging_dir, None
            if directory is not None and directory.exists():
                try:
                    shutil.rmtree(directory)
                except OSError as exc:
                    logger.warning("Could not remove %s: %s", directory, exc)
        finally:
            self._pool.shutdown(wait=True)
