"""Updater configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
HANDLERFORGE_* environment variables, so the same code runs from the CLI,
from a scheduled Lambda, or from tests with explicit keyword overrides.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class UpdaterSettings(BaseSettings):
    """Settings for one reconciliation run.

    Examples
    --------
    Override via environment::

        export HANDLERFORGE_HANDLER_REPOSITORY_URL=s3://plugins/handlers/
        export HANDLERFORGE_CODE_UPLOAD_URL=s3://deployments/resolver/
        export HANDLERFORGE_FUNCTION_NAME=lambdacg-resolver

    Or via .env file::

        HANDLERFORGE_LOG_LEVEL=DEBUG
        HANDLERFORGE_READINESS_DELAY_SECONDS=2
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="HANDLERFORGE_",
        env_file_encoding="utf-8",
    )

    # Where handler tarballs are published (versioned bucket, folder URL)
    handler_repository_url: str = ""
    list_page_size: int = 1000

    # Deployment target
    function_name: str = "lambdacg-resolver"
    code_upload_url: str = ""
    aws_region: str | None = None

    # Base runtime package the handlers are installed into
    base_package_path: Path = Path("assets/lambdacg-resolver.tgz")
    manifest_file_name: str = "handlerFactories.json"
    handler_names_variable: str = "HANDLER_FACTORIES"
    handler_method: str = "handler"

    # Object tags used as deployment marks
    update_tag_key: str = "handlerforge-update"
    deletion_tag_key: str = "handlerforge-deletion"

    # Readiness polling
    readiness_iterations: int = 120
    readiness_delay_seconds: float = 5.0

    mark_after_deploy: bool = True
    log_level: str = "INFO"
