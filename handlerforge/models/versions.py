"""Object version models observed while scanning a versioned bucket."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class VersionRef(BaseModel):
    """One entry of an object's version history.

    Either a real object version or a delete marker (tombstone).
    """

    model_config = ConfigDict(frozen=True)

    version_id: str
    last_modified: datetime
    is_delete_marker: bool = False


class BucketKey(BaseModel):
    """An object location, optionally pinned to a version."""

    model_config = ConfigDict(frozen=True)

    bucket: str
    key: str
    version_id: str | None = None

    @property
    def url(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    def as_params(self) -> dict[str, str]:
        """Keyword arguments for boto3 object-level calls."""
        params = {"Bucket": self.bucket, "Key": self.key}
        if self.version_id is not None:
            params["VersionId"] = self.version_id
        return params


class BucketPrefix(BaseModel):
    """A folder location inside a bucket. ``prefix`` is empty or ends in ``/``."""

    model_config = ConfigDict(frozen=True)

    bucket: str
    prefix: str = ""
