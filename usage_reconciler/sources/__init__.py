"""
Payload sources for Usage Reconciler.

Provides the collaborator interface and a fixture-backed implementation.
"""

from .base import UsageSource
from .fixtures import FixtureUsageSource

__all__ = ["UsageSource", "FixtureUsageSource"]
