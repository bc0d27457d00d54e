"""Tests for npm tarball parsing, staging and install."""

from __future__ import annotations

import io
import subprocess
from pathlib import Path

import pytest

from fakes import FailingStream, TrickleStream, make_npm_tarball
from handlerforge.core.npm import (
    InvalidTarballError,
    npm_install,
    read_package_info,
    store_temporary_tarball,
)


class TestReadPackageInfo:
    def test_reads_descriptor(self):
        data = make_npm_tarball("handler-alpha", "1.2.3", main="lib/main.js")
        info = read_package_info(io.BytesIO(data))
        assert info.name == "handler-alpha"
        assert info.version == "1.2.3"
        assert info.main == "lib/main.js"

    def test_extra_descriptor_fields_are_kept(self):
        data = make_npm_tarball(
            "handler-alpha",
            descriptor={"name": "handler-alpha", "version": "1.0.0", "license": "MIT"},
        )
        info = read_package_info(io.BytesIO(data))
        assert info.model_dump()["license"] == "MIT"

    def test_missing_descriptor(self):
        data = make_npm_tarball("handler-alpha", include_descriptor=False)
        with pytest.raises(InvalidTarballError, match="no package/package.json"):
            read_package_info(io.BytesIO(data))

    def test_not_a_tarball(self):
        with pytest.raises(InvalidTarballError):
            read_package_info(io.BytesIO(b"definitely not gzip"))

    def test_descriptor_without_name(self):
        data = make_npm_tarball("x", descriptor={"version": "1.0.0"})
        with pytest.raises(InvalidTarballError):
            read_package_info(io.BytesIO(data))


class TestStoreTemporaryTarball:
    def test_persists_full_tarball(self, tmp_path: Path):
        data = make_npm_tarball(
            "handler-alpha",
            files={"index.js": "x" * 300_000, "README.md": "docs"},
        )
        tarball = store_temporary_tarball("alpha.tgz", io.BytesIO(data), tmp_path)

        assert tarball.tarball_name == "alpha.tgz"
        assert tarball.info.name == "handler-alpha"
        assert tarball.location.parent == tmp_path
        assert tarball.location.name.endswith("npmpkg.tgz")
        assert tarball.location.read_bytes() == data

    def test_invalid_tarball_leaves_no_file(self, tmp_path: Path):
        data = make_npm_tarball("handler-alpha", include_descriptor=False)
        with pytest.raises(InvalidTarballError):
            store_temporary_tarball("alpha.tgz", io.BytesIO(data), tmp_path)
        assert list(tmp_path.iterdir()) == []

    def test_source_failure_leaves_no_file(self, tmp_path: Path):
        data = make_npm_tarball("handler-alpha")
        source = FailingStream(data[:20], ConnectionResetError("reset"))
        with pytest.raises(ConnectionResetError):
            store_temporary_tarball("alpha.tgz", source, tmp_path)
        assert list(tmp_path.iterdir()) == []

    def test_source_with_short_reads(self, tmp_path: Path):
        data = make_npm_tarball("handler-alpha", files={"index.js": "x" * 5_000})
        tarball = store_temporary_tarball("alpha.tgz", TrickleStream(data), tmp_path)

        assert tarball.info.name == "handler-alpha"
        assert tarball.location.read_bytes() == data


class TestNpmInstall:
    def test_no_packages_runs_nothing(self, tmp_path: Path, monkeypatch):
        calls = []
        monkeypatch.setattr(subprocess, "run", lambda *a, **kw: calls.append(a))
        npm_install(tmp_path, [])
        assert calls == []

    def test_command_line(self, tmp_path: Path, monkeypatch):
        calls = []

        def fake_run(cmd, **kwargs):
            calls.append((cmd, kwargs))
            return subprocess.CompletedProcess(cmd, 0, stdout="added 2 packages", stderr="")

        monkeypatch.setattr(subprocess, "run", fake_run)
        packages = [tmp_path / "a.tgz", tmp_path / "b.tgz"]
        npm_install(tmp_path / "pkg", packages)

        cmd, kwargs = calls[0]
        assert cmd[:2] == ["npm", "install"]
        assert "--ignore-scripts" in cmd
        assert "--save" in cmd
        assert cmd[cmd.index("--prefix") + 1] == str(tmp_path / "pkg")
        assert cmd[-2:] == [str(p) for p in packages]
        assert kwargs["check"] is True

    def test_failure_propagates(self, tmp_path: Path, monkeypatch):
        def fake_run(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, stderr="npm ERR!")

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(subprocess.CalledProcessError):
            npm_install(tmp_path, [tmp_path / "a.tgz"])
