"""Update orchestrator — the entry point of one reconciliation run.

The Updater wires together the S3TarballRepository, the ArtifactBuilder and
the LambdaUpdateTarget:

    initialize repository -> up to date? stop
    -> stage every tarball -> produce archive -> deploy -> mark repository

Builder resources are released on every exit path before an error is
propagated to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import boto3

from handlerforge.config import UpdaterSettings
from handlerforge.core.artifact_builder import ArtifactBuilder
from handlerforge.core.deploy_target import LambdaUpdateTarget
from handlerforge.core.tarball_repository import S3TarballRepository
from handlerforge.models.deployment import UpdateResult, UpdateTargetConfig

logger = logging.getLogger(__name__)


class Updater:
    """Keeps the deployed function in line with the published handler tarballs.

    Each collaborator is created fresh per run through its factory, so no
    scan results or temporary files outlive a run.

    Parameters
    ----------
    create_repository, create_builder, create_target:
        Factories for the run's collaborators.
    mark_after_deploy:
        Mark the repository as deployed after a successful rollout, so the
        next run sees it as up to date.
    """

    def __init__(
        self,
        create_repository: Callable[[], S3TarballRepository],
        create_builder: Callable[[], ArtifactBuilder],
        create_target: Callable[[], LambdaUpdateTarget],
        *,
        mark_after_deploy: bool = True,
    ) -> None:
        self._create_repository = create_repository
        self._create_builder = create_builder
        self._create_target = create_target
        self._mark_after_deploy = mark_after_deploy

    @classmethod
    def from_settings(
        cls,
        settings: UpdaterSettings | None = None,
        *,
        s3_client: Any = None,
        lambda_client: Any = None,
    ) -> Updater:
        """Build an Updater backed by boto3 clients and the real ``npm install``."""
        settings = settings or UpdaterSettings()
        if s3_client is None or lambda_client is None:
            session = boto3.Session(region_name=settings.aws_region)
            s3_client = s3_client or session.client("s3")
            lambda_client = lambda_client or session.client("lambda")

        def create_repository() -> S3TarballRepository:
            return S3TarballRepository.from_url(
                settings.handler_repository_url,
                s3_client,
                settings.list_page_size,
                update_tag_key=settings.update_tag_key,
                deletion_tag_key=settings.deletion_tag_key,
            )

        def create_builder() -> ArtifactBuilder:
            return ArtifactBuilder(
                lambda: open(settings.base_package_path, "rb"),
                manifest_file_name=settings.manifest_file_name,
            )

        def create_target() -> LambdaUpdateTarget:
            target = LambdaUpdateTarget(
                UpdateTargetConfig(
                    function_name=settings.function_name,
                    code_folder_url=settings.code_upload_url,
                    handler_names_variable=settings.handler_names_variable,
                    handler_method=settings.handler_method,
                ),
                s3_client,
                lambda_client,
            )
            target.set_await_readiness_parameters(
                settings.readiness_iterations, settings.readiness_delay_seconds
            )
            return target

        return cls(
            create_repository,
            create_builder,
            create_target,
            mark_after_deploy=settings.mark_after_deploy,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def update_to_latest_handlers(self) -> UpdateResult:
        """Deploy the latest handler tarballs if the function is behind."""
        repository = self._create_repository()
        repository.initialize()

        if repository.is_up_to_date:
            logger.info("Handlers are up to date (mark %s)", repository.update_mark)
            return UpdateResult(updated=False, update_mark=repository.update_mark)

        tarballs = repository.tarballs
        logger.info("Deploying %d handler tarball(s)", len(tarballs))

        builder = self._create_builder()
        try:
            for tarball in tarballs:
                builder.add_tarball(tarball)
            target = self._create_target()
            archive = builder.produce_archive_stream()
            try:
                receipt = target.deploy(archive)
            finally:
                archive.close()
        finally:
            builder.cleanup()

        mark = None
        if self._mark_after_deploy:
            mark = repository.mark_updated()

        return UpdateResult(
            updated=True,
            update_mark=mark,
            tarballs=[t.name for t in tarballs],
            receipt=receipt,
        )
