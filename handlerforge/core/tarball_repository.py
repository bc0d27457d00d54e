"""Handler tarball repository on a versioned S3 prefix.

Scans all object versions and delete markers under the prefix, keeps one
``VersionLedger`` per tarball key, and derives an aggregate update mark:

- every tracked ledger has a mark  ->  the greatest mark, repository up to date;
- any ledger lacks a mark          ->  ``None``, a deployment is due;
- no ledgers at all                ->  up to date (nothing to deploy).

Marks are ISO-8601 UTC timestamps of fixed width, so string comparison is
chronological comparison.
"""

from __future__ import annotations

import logging
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from handlerforge.core.s3_urls import parse_folder_url
from handlerforge.core.version_ledger import VersionLedger
from handlerforge.models.versions import BucketKey, BucketPrefix

logger = logging.getLogger(__name__)

_TARBALL_NAME = re.compile(r"(\.tgz|\.tar\.gz)$")


class NotInitializedError(RuntimeError):
    """Raised when repository state is read before ``initialize()`` completed."""


class AlreadyUpToDateError(RuntimeError):
    """Raised when marking a repository that is already up to date."""


def new_update_mark() -> str:
    """Current UTC time as a fixed-width ISO-8601 string, e.g. ``2026-10-18T09:30:00.000Z``."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class S3TarballRepository:
    """All handler tarballs under one versioned S3 prefix.

    Created once per reconciliation run and discarded afterwards; remote
    changes after ``initialize()`` are not observed.

    Parameters
    ----------
    location:
        Bucket and folder prefix holding the tarballs.
    s3_client:
        A boto3 S3 client.
    max_keys:
        Page size for ``ListObjectVersions``.
    update_tag_key, deletion_tag_key:
        Tag keys used for deployment marks, see ``VersionLedger``.
    """

    @classmethod
    def from_url(
        cls,
        folder_url: str,
        s3_client: Any,
        max_keys: int = 1000,
        **kwargs: Any,
    ) -> S3TarballRepository:
        return cls(parse_folder_url(folder_url), s3_client, max_keys, **kwargs)

    def __init__(
        self,
        location: BucketPrefix,
        s3_client: Any,
        max_keys: int = 1000,
        *,
        update_tag_key: str = "handlerforge-update",
        deletion_tag_key: str = "handlerforge-deletion",
    ) -> None:
        self._location = location
        self._s3 = s3_client
        self._max_keys = max_keys
        self._update_tag_key = update_tag_key
        self._deletion_tag_key = deletion_tag_key

        self._ledgers: dict[str, VersionLedger] = {}
        self._init_lock = threading.Lock()
        self._initialized: Future[None] | None = None
        self._is_initialized = False
        self._update_mark: str | None = None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Scan the prefix and resolve the aggregate update mark.

        Safe to call repeatedly and from several threads: the scan runs once
        and every caller observes the same outcome, including a failure.
        """
        with self._init_lock:
            owner = self._initialized is None
            if owner:
                self._initialized = Future()
            initialized = self._initialized

        if owner:
            try:
                self._initialize()
            except BaseException as exc:
                initialized.set_exception(exc)
                raise
            initialized.set_result(None)

        initialized.result()

    def _initialize(self) -> None:
        logger.info(
            "Scanning s3://%s/%s for handler tarballs",
            self._location.bucket,
            self._location.prefix,
        )
        self._scan_versions()

        for key, ledger in list(self._ledgers.items()):
            reasons: list[str] = []
            if not ledger.has_complete_version_info(reasons.append):
                logger.debug("Ignoring %s: %s", ledger.url, "; ".join(reasons))
                del self._ledgers[key]

        update_mark = self._resolve_update_mark()
        self._update_mark = update_mark
        self._is_initialized = True
        logger.info(
            "Tracking %d tarball(s), update mark %r",
            len(self._ledgers),
            self._update_mark,
        )

    def _scan_versions(self) -> None:
        """Page through ``ListObjectVersions``; each page needs the previous cursor."""
        markers: dict[str, str] = {}
        while True:
            page = self._s3.list_object_versions(
                Bucket=self._location.bucket,
                Prefix=self._location.prefix,
                MaxKeys=self._max_keys,
                **markers,
            )
            for entry in page.get("Versions", []):
                if self._is_tarball_key(entry.get("Key", "")):
                    self._ledger_for(entry["Key"]).add_listing_entry(
                        entry, is_delete_marker=False
                    )
            for entry in page.get("DeleteMarkers", []):
                if self._is_tarball_key(entry.get("Key", "")):
                    self._ledger_for(entry["Key"]).add_listing_entry(
                        entry, is_delete_marker=True
                    )

            if not page.get("IsTruncated"):
                break
            markers = {
                "KeyMarker": page["NextKeyMarker"],
                "VersionIdMarker": page["NextVersionIdMarker"],
            }

    def _is_tarball_key(self, key: str) -> bool:
        if not key.startswith(self._location.prefix):
            return False
        filename = key[len(self._location.prefix):]
        return bool(filename) and "/" not in filename and bool(_TARBALL_NAME.search(filename))

    def _ledger_for(self, key: str) -> VersionLedger:
        ledger = self._ledgers.get(key)
        if ledger is None:
            ledger = VersionLedger(
                BucketKey(bucket=self._location.bucket, key=key),
                self._s3,
                update_tag_key=self._update_tag_key,
                deletion_tag_key=self._deletion_tag_key,
            )
            self._ledgers[key] = ledger
        return ledger

    def _resolve_update_mark(self) -> str | None:
        ledgers = list(self._ledgers.values())
        if not ledgers:
            return None
        with ThreadPoolExecutor(max_workers=len(ledgers)) as pool:
            marks = list(pool.map(lambda ledger: ledger.get_mark(), ledgers))

        if any(mark is None for mark in marks):
            # at least one object version has not been deployed yet
            return None
        return max(marks)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _require_initialized(self) -> None:
        if not self._is_initialized:
            raise NotInitializedError("You need to call initialize() first")

    @property
    def ledgers(self) -> list[VersionLedger]:
        """All tracked ledgers, including deleted objects."""
        self._require_initialized()
        return list(self._ledgers.values())

    @property
    def tarballs(self) -> list[VersionLedger]:
        """Tracked tarballs that currently exist (not deleted)."""
        self._require_initialized()
        return [ledger for ledger in self._ledgers.values() if not ledger.is_deleted]

    @property
    def update_mark(self) -> str | None:
        self._require_initialized()
        return self._update_mark

    @property
    def is_up_to_date(self) -> bool:
        self._require_initialized()
        return self._update_mark is not None or not self._ledgers

    # ------------------------------------------------------------------
    # Marking
    # ------------------------------------------------------------------

    def mark_updated(self) -> str:
        """Mark every not-yet-marked ledger as deployed and return the new mark.

        Ledgers that already carry a mark keep it; freshness only requires
        that every ledger has *a* mark.
        """
        self._require_initialized()
        if self.is_up_to_date:
            raise AlreadyUpToDateError(
                f"Already up to date (update mark {self._update_mark!r})"
            )

        mark = new_update_mark()
        unmarked = [ledger for ledger in self._ledgers.values() if ledger.get_mark() is None]
        with ThreadPoolExecutor(max_workers=max(len(unmarked), 1)) as pool:
            futures = [pool.submit(ledger.mark_updated, mark) for ledger in unmarked]
        for future in futures:
            future.result()

        self._update_mark = mark
        logger.info("Marked %d tarball(s) as updated at %s", len(unmarked), mark)
        return mark
