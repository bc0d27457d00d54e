"""npm package models — what the builder learns from tarballs."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class PackageInfo(BaseModel):
    """The parts of a ``package.json`` the pipeline relies on.

    Unknown fields are kept so the full descriptor survives a round trip.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    name: str
    version: str = "0.0.0"
    main: str = "index.js"


class TemporaryTarball(BaseModel):
    """A handler tarball persisted to local disk, with its parsed descriptor."""

    model_config = ConfigDict(frozen=True)

    tarball_name: str
    location: Path
    info: PackageInfo


class ArtifactManifest(BaseModel):
    """What went into a built deployment archive.

    ``package`` is the base runtime package; ``handlers`` are the installed
    handler package names, in the order they were written to the manifest file.
    """

    model_config = ConfigDict(frozen=True)

    package: PackageInfo
    handlers: list[str] = Field(default_factory=list)
