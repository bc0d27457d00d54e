"""Tests for the Updater — one reconciliation run end to end over fakes."""

from __future__ import annotations

import io
import json
import tempfile
import zipfile
from pathlib import Path

import pytest

from fakes import FakeLambdaClient, FakeS3Client, in_progress, make_npm_tarball
from handlerforge.config import UpdaterSettings
from handlerforge.core.deploy_target import ReadinessTimeoutError
from handlerforge.core.updater import Updater

UPDATE = "handlerforge-update"
DELETION = "handlerforge-deletion"
OLD_MARK = "2026-01-01T00:00:00.000Z"


@pytest.fixture
def temp_root(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


@pytest.fixture
def updater(make_repository, make_builder, make_target) -> Updater:
    return Updater(make_repository, make_builder, make_target)


def _deployed_zip(s3: FakeS3Client) -> zipfile.ZipFile:
    ((bucket, _key), data), = s3.uploads.items()
    assert bucket == "deploy-bucket"
    return zipfile.ZipFile(io.BytesIO(data))


class TestUpdateToLatestHandlers:
    def test_empty_repository_needs_nothing(self, updater: Updater, s3: FakeS3Client):
        result = updater.update_to_latest_handlers()
        assert result.updated is False
        assert s3.uploads == {}

    def test_up_to_date_builds_nothing(self, s3: FakeS3Client, make_repository, make_target):
        s3.put("handlers/a.tgz", make_npm_tarball("handler-a"), tags={UPDATE: OLD_MARK})

        def no_builder():
            raise AssertionError("builder must not be created")

        result = Updater(make_repository, no_builder, make_target).update_to_latest_handlers()

        assert result.updated is False
        assert result.update_mark == OLD_MARK
        assert s3.uploads == {}

    def test_deploys_and_marks(
        self, updater: Updater, s3: FakeS3Client, lambda_client: FakeLambdaClient
    ):
        s3.put("handlers/a.tgz", make_npm_tarball("handler-a"), tags={UPDATE: OLD_MARK})
        b = s3.put("handlers/b.tgz", make_npm_tarball("handler-b"))

        result = updater.update_to_latest_handlers()

        assert result.updated is True
        assert result.tarballs == ["a.tgz", "b.tgz"]
        assert result.receipt is not None
        assert result.receipt.handler_names == ["handler-a", "handler-b"]
        assert s3.tags[("handlers/b.tgz", b)] == {UPDATE: result.update_mark}

        contents = _deployed_zip(s3)
        assert json.loads(contents.read("handlerFactories.json")) == ["handler-a", "handler-b"]
        assert "node_modules/handler-b/package.json" in contents.namelist()
        assert len(lambda_client.code_updates) == 1
        assert len(lambda_client.configuration_updates) == 1

        second = updater.update_to_latest_handlers()
        assert second.updated is False
        assert second.update_mark == result.update_mark
        assert len(s3.uploads) == 1

    def test_deleted_tarball_is_removed_from_function(
        self, updater: Updater, s3: FakeS3Client, lambda_client: FakeLambdaClient
    ):
        s3.put("handlers/a.tgz", make_npm_tarball("handler-a"), tags={UPDATE: OLD_MARK})
        previous = s3.put("handlers/gone.tgz", make_npm_tarball("handler-gone"), tags={UPDATE: OLD_MARK})
        s3.delete("handlers/gone.tgz")

        result = updater.update_to_latest_handlers()

        assert result.tarballs == ["a.tgz"]
        variables = lambda_client.configuration_updates[0]["Environment"]["Variables"]
        assert variables["HANDLER_FACTORIES"] == "handler-a"
        assert s3.tags[("handlers/gone.tgz", previous)][DELETION] == result.update_mark

    def test_without_marking(self, s3: FakeS3Client, make_repository, make_builder, make_target):
        s3.put("handlers/a.tgz", make_npm_tarball("handler-a"))
        updater = Updater(make_repository, make_builder, make_target, mark_after_deploy=False)

        result = updater.update_to_latest_handlers()

        assert result.updated is True
        assert result.update_mark is None
        assert s3.tag_writes == []

    def test_failed_deployment_cleans_up_and_does_not_mark(
        self,
        updater: Updater,
        s3: FakeS3Client,
        lambda_client: FakeLambdaClient,
        temp_root: Path,
    ):
        s3.put("handlers/a.tgz", make_npm_tarball("handler-a"))
        lambda_client.configurations = [in_progress()]

        with pytest.raises(ReadinessTimeoutError):
            updater.update_to_latest_handlers()

        assert list(temp_root.iterdir()) == []
        assert s3.tag_writes == []
        assert lambda_client.code_updates == []

    def test_invalid_handler_tarball_aborts_before_lambda(
        self,
        updater: Updater,
        s3: FakeS3Client,
        lambda_client: FakeLambdaClient,
        temp_root: Path,
    ):
        s3.put("handlers/bad.tgz", make_npm_tarball("bad", include_descriptor=False))

        with pytest.raises(ValueError):
            updater.update_to_latest_handlers()

        assert lambda_client.polls == 0
        assert list(temp_root.iterdir()) == []
        assert s3.tag_writes == []


class TestFromSettings:
    def test_wires_settings_into_collaborators(self, tmp_path: Path, base_package: bytes):
        base_path = tmp_path / "resolver.tgz"
        base_path.write_bytes(base_package)
        s3 = FakeS3Client()
        s3.put("handlers/gone.tgz", make_npm_tarball("handler-gone"))
        s3.delete("handlers/gone.tgz")
        lambda_client = FakeLambdaClient()

        settings = UpdaterSettings(
            handler_repository_url="s3://handlers-bucket/handlers/",
            code_upload_url="s3://deploy-bucket/code/",
            function_name="resolver-prod",
            base_package_path=base_path,
            handler_names_variable="PLUGINS",
            readiness_delay_seconds=0,
        )
        result = Updater.from_settings(
            settings, s3_client=s3, lambda_client=lambda_client
        ).update_to_latest_handlers()

        assert result.updated is True
        update = lambda_client.configuration_updates[0]
        assert update["FunctionName"] == "resolver-prod"
        assert update["Environment"]["Variables"]["PLUGINS"] == ""
        assert update["Handler"] == "dist/index.handler"

    def test_readiness_budget_from_settings(self, tmp_path: Path, base_package: bytes):
        base_path = tmp_path / "resolver.tgz"
        base_path.write_bytes(base_package)
        s3 = FakeS3Client()
        s3.put("handlers/gone.tgz", make_npm_tarball("handler-gone"))
        s3.delete("handlers/gone.tgz")
        lambda_client = FakeLambdaClient([in_progress()])

        settings = UpdaterSettings(
            handler_repository_url="s3://handlers-bucket/handlers/",
            code_upload_url="s3://deploy-bucket/code/",
            base_package_path=base_path,
            readiness_iterations=3,
            readiness_delay_seconds=0,
        )
        with pytest.raises(ReadinessTimeoutError):
            Updater.from_settings(
                settings, s3_client=s3, lambda_client=lambda_client
            ).update_to_latest_handlers()
        assert lambda_client.polls == 3
