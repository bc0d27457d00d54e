"""handlerforge data models — all Pydantic v2, all frozen (immutable)."""

from handlerforge.models.deployment import (
    VALID_DEPLOYMENT_TRANSITIONS,
    DeploymentReceipt,
    DeploymentState,
    FunctionReadiness,
    UpdateResult,
    UpdateTargetConfig,
)
from handlerforge.models.packages import ArtifactManifest, PackageInfo, TemporaryTarball
from handlerforge.models.versions import BucketKey, BucketPrefix, VersionRef

__all__ = [
    # versions
    "VersionRef",
    "BucketKey",
    "BucketPrefix",
    # packages
    "PackageInfo",
    "TemporaryTarball",
    "ArtifactManifest",
    # deployment
    "DeploymentState",
    "VALID_DEPLOYMENT_TRANSITIONS",
    "FunctionReadiness",
    "UpdateTargetConfig",
    "DeploymentReceipt",
    "UpdateResult",
]
