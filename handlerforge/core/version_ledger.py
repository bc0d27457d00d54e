"""Per-key version history of one handler tarball in a versioned bucket.

A ``VersionLedger`` is populated once from a ``ListObjectVersions`` scan and
is then an immutable snapshot: it knows the latest entry (object version or
delete marker) plus the newest older object version and the newest older
delete marker. That is enough to decide which object version carries the
deployment mark:

- live object: the latest version carries the ``update`` tag;
- deleted object: the previous real version carries the ``deletion`` tag.
  Nothing is ever read from or written to a delete marker.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any

from handlerforge.models.versions import BucketKey, VersionRef

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class DuplicateLatestVersionError(RuntimeError):
    """Raised when a listing reports two "latest" entries for one key."""


class VersionLedger:
    """Version bookkeeping and deployment marks for one object key.

    Parameters
    ----------
    location:
        Bucket and key of the tracked object (no version).
    s3_client:
        A boto3 S3 client.
    update_tag_key:
        Tag holding the mark on a live object's latest version.
    deletion_tag_key:
        Tag holding the mark on a deleted object's previous version.
    """

    def __init__(
        self,
        location: BucketKey,
        s3_client: Any,
        *,
        update_tag_key: str = "handlerforge-update",
        deletion_tag_key: str = "handlerforge-deletion",
    ) -> None:
        self._location = location
        self._s3 = s3_client
        self._update_tag_key = update_tag_key
        self._deletion_tag_key = deletion_tag_key

        self._latest: VersionRef | None = None
        self._previous_real: VersionRef | None = None
        self._previous_tombstone: VersionRef | None = None

        self._mark_lock = threading.Lock()
        self._mark: str | None = _UNSET

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def key(self) -> str:
        return self._location.key

    @property
    def url(self) -> str:
        return self._location.url

    @property
    def name(self) -> str:
        """The tarball file name, i.e. the key without its folder."""
        return self.key.rsplit("/", 1)[-1]

    @property
    def latest(self) -> VersionRef | None:
        return self._latest

    @property
    def previous_real(self) -> VersionRef | None:
        return self._previous_real

    @property
    def previous_tombstone(self) -> VersionRef | None:
        return self._previous_tombstone

    def __repr__(self) -> str:
        return f"VersionLedger({self.url!r}, latest={self._latest!r})"

    # ------------------------------------------------------------------
    # Populating from a listing
    # ------------------------------------------------------------------

    def add_version(
        self, version_id: str, last_modified: datetime, is_latest: bool
    ) -> None:
        """Record one real object version."""
        ref = VersionRef(version_id=version_id, last_modified=last_modified)
        if is_latest:
            self._set_latest(ref)
        elif self._previous_real is None or self._previous_real.last_modified < last_modified:
            self._previous_real = ref

    def add_delete_marker(
        self, version_id: str, last_modified: datetime, is_latest: bool
    ) -> None:
        """Record one delete marker."""
        ref = VersionRef(
            version_id=version_id,
            last_modified=last_modified,
            is_delete_marker=True,
        )
        if is_latest:
            self._set_latest(ref)
        elif (
            self._previous_tombstone is None
            or self._previous_tombstone.last_modified < last_modified
        ):
            self._previous_tombstone = ref

    def add_listing_entry(self, entry: dict[str, Any], *, is_delete_marker: bool) -> None:
        """Record a raw ``Versions``/``DeleteMarkers`` entry from ``ListObjectVersions``."""
        version_id = entry.get("VersionId")
        last_modified = entry.get("LastModified")
        if not version_id:
            raise ValueError(f"Version ID not given for {self.url}")
        if last_modified is None:
            raise ValueError(f"Last modified timestamp not given for {self.url}")

        is_latest = bool(entry.get("IsLatest", False))
        if is_delete_marker:
            self.add_delete_marker(version_id, last_modified, is_latest)
        else:
            self.add_version(version_id, last_modified, is_latest)

    def _set_latest(self, ref: VersionRef) -> None:
        if self._latest is not None:
            raise DuplicateLatestVersionError(
                f"Latest object version already set for {self.url}: {self._latest!r}"
            )
        self._latest = ref

    # ------------------------------------------------------------------
    # History checks
    # ------------------------------------------------------------------

    def has_complete_version_info(
        self, on_error: Callable[[str], None] | None = None
    ) -> bool:
        """Whether enough history was observed to know where the mark lives.

        ``on_error`` receives the reason when the answer is ``False``.
        """

        def reject(reason: str) -> bool:
            if on_error is not None:
                on_error(reason)
            return False

        if self._latest is None:
            return reject("Latest version not set")

        if self._latest.is_delete_marker:
            if self._previous_real is None:
                return reject("Latest is delete marker, but no previous version found")
            if self._is_previous_deleted:
                return reject(
                    "Latest is delete marker, but previous is also delete marker"
                )
        return True

    @property
    def is_deleted(self) -> bool:
        if self._latest is None:
            raise RuntimeError(f"No latest version for {self.url}")
        return self._latest.is_delete_marker

    @property
    def _is_previous_deleted(self) -> bool:
        return (
            self._previous_tombstone is not None
            and self._previous_real is not None
            and self._previous_tombstone.last_modified > self._previous_real.last_modified
        )

    def _latest_object(self) -> BucketKey:
        if self._latest is None:
            raise RuntimeError(f"No latest version for {self.url}")
        if self._latest.is_delete_marker:
            raise RuntimeError(f"Latest version of {self.url} is a delete marker")
        return self._location.model_copy(update={"version_id": self._latest.version_id})

    def _previous_object(self) -> BucketKey:
        if self._previous_real is None:
            raise RuntimeError(f"No previous version for {self.url}")
        if self._is_previous_deleted:
            raise RuntimeError(f"Previous version of {self.url} is a delete marker")
        return self._location.model_copy(
            update={"version_id": self._previous_real.version_id}
        )

    def _previous_object_or_none(self) -> BucketKey | None:
        if self._previous_real is None or self._is_previous_deleted:
            return None
        return self._previous_object()

    # ------------------------------------------------------------------
    # Marks
    # ------------------------------------------------------------------

    def _mark_target(self) -> tuple[str, BucketKey]:
        if self.is_deleted:
            return self._deletion_tag_key, self._previous_object()
        return self._update_tag_key, self._latest_object()

    def get_mark(self) -> str | None:
        """Read the deployment mark, or ``None`` if this state was never deployed.

        Read once, then memoized for the lifetime of the ledger.
        """
        with self._mark_lock:
            if self._mark is _UNSET:
                tag_key, target = self._mark_target()
                tags = self._get_tags(target)
                self._mark = tags.get(tag_key)
                logger.debug("Mark of %s (%s): %r", self.url, tag_key, self._mark)
            return self._mark

    def mark_updated(self, mark: str) -> None:
        """Record that the current state of this object has been deployed.

        Live object: tag the latest version and remove a stale mark from the
        previous version, so a rollback to it is not mistaken as deployed.
        Deleted object: tag the previous version with the deletion mark.
        """
        if not self.is_deleted:
            latest = self._latest_object()
            previous = self._previous_object_or_none()
            if previous is None:
                self._set_tag(latest, self._update_tag_key, mark)
            else:
                with ThreadPoolExecutor(max_workers=2) as pool:
                    futures = [
                        pool.submit(self._set_tag, latest, self._update_tag_key, mark),
                        pool.submit(self._remove_tag, previous, self._update_tag_key),
                    ]
                for future in futures:
                    future.result()
        else:
            self._set_tag(self._previous_object(), self._deletion_tag_key, mark)

        with self._mark_lock:
            self._mark = mark
        logger.debug("Marked %s as updated at %s", self.url, mark)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def open_stream(self) -> Any:
        """Return a readable stream of the latest object version."""
        response = self._s3.get_object(**self._latest_object().as_params())
        return response["Body"]

    # ------------------------------------------------------------------
    # Tag helpers
    # ------------------------------------------------------------------

    def _get_tags(self, target: BucketKey) -> dict[str, str]:
        response = self._s3.get_object_tagging(**target.as_params())
        return {t["Key"]: t["Value"] for t in response.get("TagSet", [])}

    def _put_tags(self, target: BucketKey, tags: dict[str, str]) -> None:
        self._s3.put_object_tagging(
            **target.as_params(),
            Tagging={"TagSet": [{"Key": k, "Value": v} for k, v in tags.items()]},
        )

    def _set_tag(self, target: BucketKey, tag_key: str, value: str) -> None:
        tags = self._get_tags(target)
        if tags.get(tag_key) == value:
            return
        tags[tag_key] = value
        self._put_tags(target, tags)

    def _remove_tag(self, target: BucketKey, tag_key: str) -> None:
        tags = self._get_tags(target)
        if tag_key not in tags:
            return
        del tags[tag_key]
        self._put_tags(target, tags)
