"""
Collaborator interface for raw usage payloads.

Transport, authentication and retries belong to implementations of this
protocol; the engine only sees decoded JSON documents.
"""

from typing import Any, Dict, Optional, Protocol


class UsageSource(Protocol):
    """Serves the raw payloads needed to build a usage snapshot."""

    def fetch_individual_usage(self) -> Dict[str, Any]:
        ...

    def fetch_monthly_invoice(self, month: int, year: int) -> Dict[str, Any]:
        ...

    def fetch_teams(self) -> Dict[str, Any]:
        ...

    def fetch_team_details(self, team_id: int) -> Dict[str, Any]:
        ...

    def fetch_team_spend(self, team_id: int) -> Dict[str, Any]:
        ...

    def fetch_usage_based_status(self, team_id: Optional[int] = None) -> Dict[str, Any]:
        ...

    def fetch_hard_limit(self, team_id: Optional[int] = None) -> Dict[str, Any]:
        ...
