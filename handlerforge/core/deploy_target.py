"""Roll a built archive out to a Lambda function.

Deployment protocol (one ``DeploymentState`` per step)::

    uploading_code -> awaiting_readiness -> updating_code
                   -> awaiting_readiness -> updating_configuration -> done

Every update call carries the ``RevisionId`` returned by the most recent
readiness poll (or by the previous update), so a concurrent change of the
function makes the update fail instead of silently overwriting it.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, BinaryIO

from handlerforge.core.s3_urls import parse_folder_url
from handlerforge.models.deployment import (
    VALID_DEPLOYMENT_TRANSITIONS,
    DeploymentReceipt,
    DeploymentState,
    FunctionReadiness,
    UpdateTargetConfig,
)
from handlerforge.models.packages import ArtifactManifest

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (".js", ".cjs", ".mjs")


class ReadinessTimeoutError(RuntimeError):
    """Raised when the function does not become ready within the polling budget."""


class InvalidTransitionError(RuntimeError):
    """Raised when a requested deployment state transition is not valid."""


def handler_for_main(main: str, method: str = "handler") -> str:
    """Derive a Lambda handler string from a package's ``main`` file.

    ``"dist/index.js"`` becomes ``"dist/index.handler"``.
    """
    path = main[2:] if main.startswith("./") else main
    for extension in SOURCE_EXTENSIONS:
        if path.endswith(extension):
            path = path[: -len(extension)]
            break
    return f"{path}.{method}"


class LambdaUpdateTarget:
    """Uploads archives and updates a Lambda function's code and configuration.

    Parameters
    ----------
    config:
        Function name and code upload folder.
    s3_client, lambda_client:
        boto3 clients.
    sleep:
        Called with the delay between readiness polls; ``time.sleep`` by default.
    """

    DEFAULT_READINESS_ITERATIONS = 120
    DEFAULT_READINESS_DELAY_SECONDS = 5.0

    def __init__(
        self,
        config: UpdateTargetConfig,
        s3_client: Any,
        lambda_client: Any,
        *,
        sleep: Any = time.sleep,
    ) -> None:
        self._config = config
        self._s3 = s3_client
        self._lambda = lambda_client
        self._sleep = sleep
        self._iterations = self.DEFAULT_READINESS_ITERATIONS
        self._delay_seconds = self.DEFAULT_READINESS_DELAY_SECONDS
        self._current_variables: dict[str, str] = {}

        self.state = DeploymentState.PENDING
        self.history: list[DeploymentState] = [DeploymentState.PENDING]

    def set_await_readiness_parameters(self, iterations: int, delay_seconds: float) -> None:
        """Override the polling budget (number of polls and delay between them)."""
        if iterations < 1:
            raise ValueError("iterations must be at least 1")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        self._iterations = iterations
        self._delay_seconds = delay_seconds

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, target: DeploymentState) -> None:
        allowed = VALID_DEPLOYMENT_TRANSITIONS.get(self.state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition deployment from {self.state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        logger.debug("Deployment %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    def deploy(
        self, archive: BinaryIO, manifest: ArtifactManifest | None = None
    ) -> DeploymentReceipt:
        """Upload ``archive`` and switch the function over to it.

        ``manifest`` describes the archive; when omitted it is taken from
        ``archive.manifest`` after the upload has drained the stream.
        """
        try:
            return self._deploy(archive, manifest)
        except BaseException:
            if self.state not in (DeploymentState.DONE, DeploymentState.FAILED):
                self._transition(DeploymentState.FAILED)
            raise

    def _deploy(
        self, archive: BinaryIO, manifest: ArtifactManifest | None
    ) -> DeploymentReceipt:
        self._transition(DeploymentState.UPLOADING_CODE)
        location = parse_folder_url(self._config.code_folder_url)
        key = f"{location.prefix}{self._config.function_name}-{uuid.uuid4()}.zip"
        logger.info("Uploading code to s3://%s/%s", location.bucket, key)
        self._s3.upload_fileobj(archive, location.bucket, key)

        if manifest is None:
            manifest = archive.manifest.result()  # type: ignore[attr-defined]

        self._transition(DeploymentState.AWAITING_READINESS)
        revision_id = self.await_readiness()

        self._transition(DeploymentState.UPDATING_CODE)
        response = self._lambda.update_function_code(
            FunctionName=self._config.function_name,
            S3Bucket=location.bucket,
            S3Key=key,
            RevisionId=revision_id,
        )
        logger.info(
            "Updated code of %s (revision %s)",
            self._config.function_name,
            response.get("RevisionId"),
        )

        self._transition(DeploymentState.AWAITING_READINESS)
        revision_id = self.await_readiness()

        self._transition(DeploymentState.UPDATING_CONFIGURATION)
        handler = handler_for_main(manifest.package.main, self._config.handler_method)
        variables = dict(self._current_variables)
        variables[self._config.handler_names_variable] = ",".join(manifest.handlers)
        response = self._lambda.update_function_configuration(
            FunctionName=self._config.function_name,
            Handler=handler,
            Environment={"Variables": variables},
            RevisionId=revision_id,
        )
        revision_id = response.get("RevisionId", revision_id)
        logger.info(
            "Updated configuration of %s: handler %s, %d handler package(s)",
            self._config.function_name,
            handler,
            len(manifest.handlers),
        )

        self._transition(DeploymentState.DONE)
        return DeploymentReceipt(
            function_name=self._config.function_name,
            bucket=location.bucket,
            key=key,
            revision_id=revision_id,
            handler=handler,
            handler_names=list(manifest.handlers),
            states=list(self.history),
        )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def await_readiness(self) -> str:
        """Poll until the last update succeeded and the function is active.

        Returns the ``RevisionId`` of the ready configuration. Incomplete or
        unexpected responses count as "not ready yet".
        """
        for iteration in range(1, self._iterations + 1):
            response = self._lambda.get_function_configuration(
                FunctionName=self._config.function_name
            )
            readiness = FunctionReadiness.from_response(response or {})
            if readiness.is_ready:
                self._current_variables = (
                    (response.get("Environment") or {}).get("Variables") or {}
                )
                logger.debug(
                    "%s ready after %d poll(s), revision %s",
                    self._config.function_name,
                    iteration,
                    readiness.revision_id,
                )
                return readiness.revision_id  # type: ignore[return-value]

            logger.debug(
                "%s not ready (status=%s, state=%s), poll %d/%d",
                self._config.function_name,
                readiness.last_update_status,
                readiness.state,
                iteration,
                self._iterations,
            )
            if iteration < self._iterations:
                self._sleep(self._delay_seconds)

        raise ReadinessTimeoutError(
            f"{self._config.function_name} did not become ready after "
            f"{self._iterations} poll(s)"
        )
