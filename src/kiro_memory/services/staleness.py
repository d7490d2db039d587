"""Staleness Service - flag observations whose files changed afterwards."""

import os
import time
from pathlib import Path
from typing import List, Optional, TYPE_CHECKING

from ..logging_config import get_logger
from ..models import StalenessReport, split_list_field

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..db import DatabaseManager

logger = get_logger("services.staleness")


class StalenessService:
    """Marks observations stale when a modified file is newer than the observation.

    Stale observations stay searchable at a reduced score; nothing is deleted.

    Usage:
        service = StalenessService(db, config)
        report = await service.detect(project="acme", base_dir="/src/acme")
    """

    def __init__(self, db: "DatabaseManager", config: "AppConfig"):
        self.db = db
        self.config = config

    async def detect(
        self,
        project: Optional[str] = None,
        base_dir: Optional[str] = None,
        reset: bool = False,
    ) -> StalenessReport:
        """Scan observations with modified files and flag the stale ones.

        Args:
            project: Restrict to one project
            base_dir: Directory relative paths resolve against (default cwd)
            reset: Also clear the flag on observations found fresh

        Returns:
            StalenessReport
        """
        start = time.perf_counter()
        root = Path(base_dir) if base_dir else Path.cwd()
        report = StalenessReport()
        fresh_ids: List[int] = []

        for obs in await self.db.get_observations_with_files(project):
            report.checked += 1
            stale = False
            for name in split_list_field(obs.files_modified):
                path = Path(name)
                if not path.is_absolute():
                    path = root / path
                try:
                    mtime_ms = os.stat(path).st_mtime * 1000
                except OSError:
                    report.missing_files += 1
                    continue
                if mtime_ms > obs.created_at_epoch:
                    stale = True
                    break

            if stale and not obs.is_stale:
                report.stale_ids.append(obs.id)
            elif not stale and obs.is_stale:
                fresh_ids.append(obs.id)

        if report.stale_ids:
            report.marked_stale = await self.db.set_stale(report.stale_ids, True)
        if reset and fresh_ids:
            await self.db.set_stale(fresh_ids, False)
            logger.debug(f"Cleared stale flag on {len(fresh_ids)} observations")

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Staleness check: {report.checked} checked, {report.marked_stale} marked stale, "
            f"{report.missing_files} missing files in {duration_ms:.2f}ms"
        )
        return report
