"""AWS Lambda entry point, invoked by a schedule or an S3 event rule.

The event payload is ignored: every invocation reconciles the whole
handler repository.
"""

from __future__ import annotations

import logging
from typing import Any

from handlerforge.config import UpdaterSettings
from handlerforge.core.updater import Updater

logger = logging.getLogger(__name__)


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    settings = UpdaterSettings()
    logging.getLogger().setLevel(settings.log_level)

    result = Updater.from_settings(settings).update_to_latest_handlers()
    logger.info(
        "Update run finished: updated=%s mark=%s", result.updated, result.update_mark
    )
    return result.model_dump(mode="json")
