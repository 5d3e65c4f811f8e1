"""Branch label canonicalization.

Card-platform branch labels use the ERP's hierarchical "Region:Subregion"
location codes; vendor bills carry the short form. BranchNormalizer maps
both onto the short form so branch filters match across sources.
"""

from __future__ import annotations

from collections.abc import Mapping

# Exact matches win over prefix rewrites.
BRANCH_ALIASES: dict[str, str] = {
    "Phoenix:Phx - SouthEast": "Phoenix - SouthEast",
    "Phoenix:Phx - SouthWest": "Phoenix - SouthWest",
    "Phoenix:Phx - North": "Phoenix - North",
    "Las Vegas": "Las Vegas",
    "Corporate": "Corporate",
}

# Hierarchical prefix -> canonical short form, checked in order.
BRANCH_PREFIX_REWRITES: tuple[tuple[str, str], ...] = (
    ("Phoenix:Phx", "Phoenix"),
)


class BranchNormalizer:
    """Alias table plus prefix rule for branch labels."""

    def __init__(
        self,
        aliases: Mapping[str, str] | None = None,
        prefix_rewrites: tuple[tuple[str, str], ...] | None = None,
    ) -> None:
        self._aliases = dict(BRANCH_ALIASES if aliases is None else aliases)
        self._prefixes = BRANCH_PREFIX_REWRITES if prefix_rewrites is None else prefix_rewrites

    def normalize(self, value: str | None) -> str | None:
        if not value:
            return None
        if value in self._aliases:
            return self._aliases[value]
        for prefix, replacement in self._prefixes:
            if value.startswith(prefix):
                return replacement + value[len(prefix):]
        return value
