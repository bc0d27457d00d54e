"""Parsing of ``s3://bucket/prefix/`` style locations."""

from __future__ import annotations

import re

from handlerforge.models.versions import BucketPrefix

_S3_URL = re.compile(r"^[sS]3://(?P<bucket>[^/]+)(/(?P<rest>.*))?$")


class InvalidS3UrlError(ValueError):
    """Raised when a string is not a usable S3 folder URL."""


def _split(url: str) -> tuple[str, str]:
    match = _S3_URL.match(url)
    if not match:
        raise InvalidS3UrlError(f"This is not an S3 URL: {url!r}")
    return match.group("bucket"), match.group("rest") or ""


def parse_folder_url(url: str) -> BucketPrefix:
    """Parse a folder URL. The path part must be empty or end in ``/``."""
    bucket, prefix = _split(url)
    if prefix and not prefix.endswith("/"):
        raise InvalidS3UrlError(
            f"The S3 URL does not indicate a folder (does not end in '/'): {url!r}"
        )
    return BucketPrefix(bucket=bucket, prefix=prefix)
