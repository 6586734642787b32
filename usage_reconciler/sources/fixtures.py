"""
Fixture-backed usage source.

Serves payloads from a directory of JSON files for offline inspection.
Every call is read fresh from disk; a missing file is a failed fetch.
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger()

INDIVIDUAL_USAGE_FILE = "usage.json"
TEAMS_FILE = "teams.json"
TEAM_DETAILS_FILE = "team.json"
TEAM_SPEND_FILE = "team-spend.json"
USAGE_BASED_FILE = "usage-based.json"
HARD_LIMIT_FILE = "hard-limit.json"


def invoice_file_name(month: int, year: int) -> str:
    """File name holding the invoice for a billing month."""
    return f"invoice-{year:04d}-{month:02d}.json"


class FixtureUsageSource:
    """UsageSource reading payloads from JSON files in a directory."""

    def __init__(self, directory: str):
        """Initialize the source.

        Args:
            directory: Directory containing the payload files

        Raises:
            FileNotFoundError: If the directory does not exist
        """
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Fixture directory not found: {directory}")

    def _load(self, name: str) -> Dict[str, Any]:
        path = self.directory / name
        if not path.exists():
            raise FileNotFoundError(f"Fixture payload not found: {path}")

        logger.debug("Reading fixture payload", path=str(path))
        with open(path, "r", encoding="utf-8") as f:
            try:
                return json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in fixture payload {path}: {e}") from e

    def fetch_individual_usage(self) -> Dict[str, Any]:
        return self._load(INDIVIDUAL_USAGE_FILE)

    def fetch_monthly_invoice(self, month: int, year: int) -> Dict[str, Any]:
        return self._load(invoice_file_name(month, year))

    def fetch_teams(self) -> Dict[str, Any]:
        path = self.directory / TEAMS_FILE
        if not path.exists():
            # No teams fixture means an individual subscriber
            return {"teams": []}
        return self._load(TEAMS_FILE)

    def fetch_team_details(self, team_id: int) -> Dict[str, Any]:
        return self._load(TEAM_DETAILS_FILE)

    def fetch_team_spend(self, team_id: int) -> Dict[str, Any]:
        return self._load(TEAM_SPEND_FILE)

    def fetch_usage_based_status(self, team_id: Optional[int] = None) -> Dict[str, Any]:
        return self._load(USAGE_BASED_FILE)

    def fetch_hard_limit(self, team_id: Optional[int] = None) -> Dict[str, Any]:
        return self._load(HARD_LIMIT_FILE)
