"""Shared test fixtures for handlerforge."""

from __future__ import annotations

import io
from collections.abc import Callable
from pathlib import Path

import pytest

from fakes import FakeLambdaClient, FakeS3Client, fake_npm_install, make_npm_tarball
from handlerforge.core.artifact_builder import ArtifactBuilder
from handlerforge.core.deploy_target import LambdaUpdateTarget
from handlerforge.core.tarball_repository import S3TarballRepository
from handlerforge.models.deployment import UpdateTargetConfig
from handlerforge.models.versions import BucketPrefix

BUCKET = "handlers-bucket"
PREFIX = "handlers/"


@pytest.fixture
def s3() -> FakeS3Client:
    """Provide an empty in-memory versioned bucket."""
    return FakeS3Client()


@pytest.fixture
def lambda_client() -> FakeLambdaClient:
    """Provide a Lambda client that reports ready on every poll."""
    return FakeLambdaClient()


@pytest.fixture
def make_repository(s3: FakeS3Client) -> Callable[..., S3TarballRepository]:
    """Factory fixture: a repository over the fake bucket's ``handlers/`` prefix."""

    def _factory(max_keys: int = 1000) -> S3TarballRepository:
        return S3TarballRepository(BucketPrefix(bucket=BUCKET, prefix=PREFIX), s3, max_keys)

    return _factory


@pytest.fixture
def base_package() -> bytes:
    """The resolver base package tarball."""
    return make_npm_tarball(
        "lambdacg-resolver",
        "2.1.0",
        main="dist/index.js",
        files={"dist/index.js": "exports.handler = async () => ({});\n"},
    )


@pytest.fixture
def install_calls() -> list[tuple[Path, list[Path]]]:
    return []


@pytest.fixture
def make_builder(
    base_package: bytes, install_calls: list[tuple[Path, list[Path]]]
) -> Callable[..., ArtifactBuilder]:
    """Factory fixture: an ArtifactBuilder with the fake install step."""

    def _factory(base: bytes | None = None) -> ArtifactBuilder:
        data = base_package if base is None else base
        return ArtifactBuilder(
            lambda: io.BytesIO(data),
            fake_npm_install(install_calls),
        )

    return _factory


@pytest.fixture
def make_target(
    s3: FakeS3Client, lambda_client: FakeLambdaClient
) -> Callable[..., LambdaUpdateTarget]:
    """Factory fixture: a LambdaUpdateTarget that never sleeps."""

    def _factory(iterations: int = 5) -> LambdaUpdateTarget:
        target = LambdaUpdateTarget(
            UpdateTargetConfig(
                function_name="lambdacg-resolver",
                code_folder_url="s3://deploy-bucket/code/",
            ),
            s3,
            lambda_client,
            sleep=lambda seconds: None,
        )
        target.set_await_readiness_parameters(iterations, 0)
        return target

    return _factory
