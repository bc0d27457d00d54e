"""Deployment state machine models — one rollout of code + configuration."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DeploymentState(str, Enum):
    """States a single deployment passes through."""

    PENDING = "pending"
    UPLOADING_CODE = "uploading_code"
    AWAITING_READINESS = "awaiting_readiness"
    UPDATING_CODE = "updating_code"
    UPDATING_CONFIGURATION = "updating_configuration"
    DONE = "done"
    FAILED = "failed"


# Valid state transitions, enforced by LambdaUpdateTarget.
# AWAITING_READINESS is entered twice: before the code update and before the
# configuration update. Terminal states (DONE, FAILED) have no outgoing edges.
VALID_DEPLOYMENT_TRANSITIONS: dict[DeploymentState, set[DeploymentState]] = {
    DeploymentState.PENDING: {DeploymentState.UPLOADING_CODE, DeploymentState.FAILED},
    DeploymentState.UPLOADING_CODE: {
        DeploymentState.AWAITING_READINESS,
        DeploymentState.FAILED,
    },
    DeploymentState.AWAITING_READINESS: {
        DeploymentState.UPDATING_CODE,
        DeploymentState.UPDATING_CONFIGURATION,
        DeploymentState.FAILED,
    },
    DeploymentState.UPDATING_CODE: {
        DeploymentState.AWAITING_READINESS,
        DeploymentState.FAILED,
    },
    DeploymentState.UPDATING_CONFIGURATION: {
        DeploymentState.DONE,
        DeploymentState.FAILED,
    },
    DeploymentState.DONE: set(),
    DeploymentState.FAILED: set(),
}


class FunctionReadiness(BaseModel):
    """The readiness-relevant fields of a function configuration response."""

    model_config = ConfigDict(frozen=True)

    revision_id: str | None = None
    last_update_status: str | None = None
    state: str | None = None

    @classmethod
    def from_response(cls, response: dict[str, Any]) -> FunctionReadiness:
        return cls(
            revision_id=response.get("RevisionId"),
            last_update_status=response.get("LastUpdateStatus"),
            state=response.get("State"),
        )

    @property
    def is_ready(self) -> bool:
        return (
            self.last_update_status == "Successful"
            and self.state == "Active"
            and self.revision_id is not None
        )


class UpdateTargetConfig(BaseModel):
    """Where and how the built archive is deployed."""

    model_config = ConfigDict(frozen=True)

    function_name: str
    code_folder_url: str
    handler_names_variable: str = "HANDLER_FACTORIES"
    handler_method: str = "handler"


class DeploymentReceipt(BaseModel):
    """Record of a completed deployment."""

    model_config = ConfigDict(frozen=True)

    deployment_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    function_name: str
    bucket: str
    key: str
    revision_id: str
    handler: str
    handler_names: list[str] = Field(default_factory=list)
    states: list[DeploymentState] = Field(default_factory=list)
    completed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class UpdateResult(BaseModel):
    """Outcome of one reconciliation run."""

    model_config = ConfigDict(frozen=True)

    updated: bool
    update_mark: str | None = None
    tarballs: list[str] = Field(default_factory=list)
    receipt: DeploymentReceipt | None = None
