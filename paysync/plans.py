"""
Static plan configuration.

The table is versioned and loaded once at startup; nothing mutates it at
runtime. `None` is the unlimited sentinel.
"""

from types import MappingProxyType
from typing import Mapping

from paysync.models.billing import PlanLimits, PlanTier

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

_PLAN_TABLES: dict[str, dict[PlanTier, PlanLimits]] = {
    "2024-06": {
        PlanTier.FREE: PlanLimits(
            plan=PlanTier.FREE,
            storage_bytes=0,
            max_file_size=500 * KB,
            conversions_per_day=20,
            api_calls_per_day=100,
        ),
        PlanTier.PRO: PlanLimits(
            plan=PlanTier.PRO,
            storage_bytes=1 * GB,
            max_file_size=5 * MB,
            conversions_per_day=500,
            api_calls_per_day=2000,
        ),
        PlanTier.TEAM: PlanLimits(
            plan=PlanTier.TEAM,
            storage_bytes=10 * GB,
            max_file_size=20 * MB,
            conversions_per_day=None,
            api_calls_per_day=10000,
        ),
        PlanTier.ENTERPRISE: PlanLimits(
            plan=PlanTier.ENTERPRISE,
            storage_bytes=None,
            max_file_size=100 * MB,
            conversions_per_day=None,
            api_calls_per_day=100000,
        ),
    },
}


class PlanCatalog:
    """Read-only view over one version of the plan table."""

    def __init__(self, version: str, limits: Mapping[PlanTier, PlanLimits]) -> None:
        self.version = version
        self._limits = MappingProxyType(dict(limits))

    def limits_for(self, plan: PlanTier) -> PlanLimits:
        return self._limits.get(plan) or self._limits[PlanTier.FREE]


def load_plan_catalog(version: str) -> PlanCatalog:
    """Load the plan table for `version`.

    Raises:
        ValueError: unknown version.
    """
    table = _PLAN_TABLES.get(version)
    if table is None:
        raise ValueError(f"Unknown plan table version '{version}'")
    return PlanCatalog(version, table)
