# ============================================================================
# JOB DEFINITION SERVICE
# ============================================================================
# EPOCH: 1 - RULE WORKER
# STATUS: Core - Job definition management
# PURPOSE: Load job definitions from YAML and seed the job store
# CREATED: 18 OCT 2026
# ============================================================================
"""
Job Definition Service

Loads job definitions from YAML files and saves them to the job store, so
the store stays the single source of truth actors load from.

Job files live in the jobs/ directory (JOB_DEFINITIONS_DIR overrides).
A file that fails to parse or validate is logged and skipped.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from core.models import JobDefinition
from repositories.store import JobStore

logger = logging.getLogger(__name__)


class JobDefinitionService:
    """Service for loading job definitions into the store."""

    def __init__(self, store: JobStore, definitions_dir: Optional[str] = None):
        """
        Initialize job definition service.

        Args:
            store: Store the definitions are saved to
            definitions_dir: Directory containing job YAML files.
                             Defaults to ./jobs/
        """
        self.store = store
        if definitions_dir:
            self.definitions_dir = Path(definitions_dir)
        else:
            self.definitions_dir = Path(__file__).parent.parent / "jobs"

        self._loaded: Dict[str, JobDefinition] = {}

    async def load_all(self) -> int:
        """
        Load every *.yaml / *.yml file and save it to the store.

        Returns:
            Number of job definitions loaded
        """
        if not self.definitions_dir.exists():
            logger.warning(f"Job definitions directory not found: {self.definitions_dir}")
            return 0

        count = 0
        paths = sorted(self.definitions_dir.glob("*.yaml")) + sorted(self.definitions_dir.glob("*.yml"))
        for path in paths:
            try:
                definition = self.load_file(path)
            except (OSError, yaml.YAMLError, ValidationError, ValueError) as e:
                logger.error(f"Failed to load {path}: {e}")
                continue

            await self.register(definition)
            count += 1

        logger.info(f"Loaded {count} job definitions from {self.definitions_dir}")
        return count

    def load_file(self, path: Path) -> JobDefinition:
        """
        Parse and validate one YAML file.

        Raises:
            ValueError: File is empty or not a mapping
            ValidationError: Definition is invalid
        """
        with open(path) as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError(f"{path} does not contain a job definition mapping")

        return JobDefinition.model_validate(data)

    async def register(self, definition: JobDefinition) -> None:
        """Save a definition to the store (for files, tests or programmatic use)."""
        await self.store.save_job(definition)
        self._loaded[definition.job_id] = definition
        logger.info(
            f"Registered job: {definition.job_id} v{definition.version} "
            f"({len(definition.steps)} steps)"
        )

    def list_loaded(self) -> List[str]:
        """Job IDs registered through this service."""
        return sorted(self._loaded)


__all__ = ["JobDefinitionService"]
