"""Consolidation Service - merge near-duplicate observations.

Observations of the same project and type that touched the same set of
files are folded into the newest one. The keeper collects the distinct
text bodies of the others and its title records how many were merged.
"""

import re
import time
from collections import defaultdict
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from ..exceptions import MaintenanceError
from ..logging_config import get_logger
from ..models import ConsolidationReport, Observation, split_list_field

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..db import DatabaseManager

logger = get_logger("services.consolidation")

_CONSOLIDATED_SUFFIX = re.compile(r"\s*\(consolidated x\d+\)\s*$")

GroupKey = Tuple[str, str, str]


def canonical_files(files_modified: Optional[str]) -> str:
    """Order-independent form of a comma-separated file list."""
    return ",".join(sorted(set(split_list_field(files_modified))))


def consolidated_title(title: str, count: int) -> str:
    base = _CONSOLIDATED_SUFFIX.sub("", title or "").strip()
    return f"{base} (consolidated x{count})"


class ConsolidationService:
    """Groups and merges observations about the same files.

    Usage:
        service = ConsolidationService(db, config)
        report = await service.consolidate(project="acme", dry_run=True)
        print(report.merged, report.removed)
    """

    def __init__(self, db: "DatabaseManager", config: "AppConfig"):
        self.db = db
        self.config = config

    async def find_groups(
        self,
        project: Optional[str] = None,
        min_group_size: Optional[int] = None,
    ) -> Dict[GroupKey, List[Observation]]:
        """Candidate groups keyed by (project, type, canonical file list)."""
        if min_group_size is None:
            min_group_size = self.config.maintenance.min_group_size

        groups: Dict[GroupKey, List[Observation]] = defaultdict(list)
        for obs in await self.db.get_observations_with_files(project):
            files = canonical_files(obs.files_modified)
            if not files:
                continue
            groups[(obs.project, obs.type, files)].append(obs)

        return {key: members for key, members in groups.items() if len(members) >= min_group_size}

    async def consolidate(
        self,
        project: Optional[str] = None,
        min_group_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> ConsolidationReport:
        """Merge each qualifying group into its newest observation.

        Args:
            project: Restrict to one project
            min_group_size: Minimum observations per group, defaults to config
            dry_run: Report what would change without writing

        Returns:
            ConsolidationReport with groups merged and observations removed
        """
        start = time.perf_counter()
        groups = await self.find_groups(project, min_group_size)
        report = ConsolidationReport(dry_run=dry_run)

        for (group_project, obs_type, files), members in groups.items():
            keeper = max(members, key=lambda o: (o.created_at_epoch, o.id))
            others = [o for o in members if o.id != keeper.id]
            report.groups.append(
                {
                    "project": group_project,
                    "type": obs_type,
                    "files": files,
                    "keeper_id": keeper.id,
                    "removed_ids": [o.id for o in others],
                }
            )
            if dry_run:
                report.merged += 1
                report.removed += len(others)
                continue

            try:
                await self._merge_group(keeper, others)
            except Exception as e:
                error = MaintenanceError(keeper.id, f"consolidation failed: {e}")
                logger.error(error.message)
                report.failed += 1
                continue
            report.merged += 1
            report.removed += len(others)

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Consolidation{' (dry run)' if dry_run else ''}: {report.merged} groups, "
            f"{report.removed} observations removed, {report.failed} failed in {duration_ms:.2f}ms"
        )
        return report

    def _merged_text(self, keeper: Observation, others: List[Observation]) -> str:
        maintenance = self.config.maintenance
        seen = set()
        parts: List[str] = []
        for obs in [keeper] + sorted(others, key=lambda o: (o.created_at_epoch, o.id), reverse=True):
            body = (obs.text or "").strip()
            if not body or body in seen:
                continue
            seen.add(body)
            parts.append(body)
        return maintenance.merge_delimiter.join(parts)[: maintenance.max_merged_chars]

    async def _merge_group(self, keeper: Observation, others: List[Observation]) -> None:
        title = consolidated_title(keeper.title, len(others) + 1)
        text = self._merged_text(keeper, others)
        async with self.db.transaction():
            await self.db.update_observation_content(keeper.id, title, text)
            await self.db.delete_observations([o.id for o in others])
            # The old vector describes the pre-merge text; backfill re-embeds the keeper
            await self.db.delete_embedding(keeper.id)
        logger.debug(f"Merged {len(others)} observations into {keeper.id}")
