"""Tests for S3 folder URL parsing."""

from __future__ import annotations

import pytest

from handlerforge.core.s3_urls import InvalidS3UrlError, parse_folder_url


@pytest.mark.parametrize(
    ("url", "bucket", "prefix"),
    [
        ("s3://plugins/handlers/", "plugins", "handlers/"),
        ("S3://plugins/a/b/", "plugins", "a/b/"),
        ("s3://plugins/", "plugins", ""),
        ("s3://plugins", "plugins", ""),
    ],
)
def test_parse_folder_url(url: str, bucket: str, prefix: str):
    location = parse_folder_url(url)
    assert location.bucket == bucket
    assert location.prefix == prefix


@pytest.mark.parametrize(
    "url",
    ["https://plugins/handlers/", "s3://plugins/handlers", "s3:///handlers/", ""],
)
def test_rejects_non_folder_urls(url: str):
    with pytest.raises(InvalidS3UrlError):
        parse_folder_url(url)
