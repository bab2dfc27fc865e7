import logging
from typing import Optional

from autolot.imports.connectors import SourceConnector
from autolot.imports.models import ImportConfig, ImportRun

logger = logging.getLogger(__name__)


class ArchiveManager:
    """
    Moves a processed source out of the way after a completed run.
    Best effort: failures are logged and recorded on the run, never change its status.
    """

    def __init__(self, connector: SourceConnector):
        self.connector = connector

    def finalize(self, run: ImportRun, config: ImportConfig, source_name: Optional[str]) -> Optional[bool]:
        policy = config.processing
        if run.status != "completed" or not policy.archive_processed_files or not source_name:
            return None
        try:
            archived = self.connector.archive(config, source_name, policy.archive_directory)
        except Exception:
            logger.exception(
                "failed to archive processed source",
                extra={"run_id": run.run_id, "config_id": run.config_id, "source": source_name},
            )
            return False
        if archived:
            logger.info(
                "archived processed source",
                extra={"run_id": run.run_id, "source": source_name, "archive_directory": policy.archive_directory},
            )
        else:
            logger.info("source kind has no post-read archive action", extra={"run_id": run.run_id, "source": source_name})
        return archived
