from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Eviction rank: lower ranks are evicted first."""
        return _RANKS[self]

    @classmethod
    def from_key(cls, key: str) -> "Priority":
        """Read the tier back out of a `{priority}:{category}:{id}` key."""
        prefix, _, _ = key.partition(":")
        try:
            return cls(prefix)
        except ValueError:
            return cls.MEDIUM


_RANKS = {Priority.LOW: 0, Priority.MEDIUM: 1, Priority.HIGH: 2}


@dataclass(frozen=True)
class TierPolicy:
    priority: Priority
    ttl_seconds: int


DEFAULT_POLICIES: Mapping[str, TierPolicy] = MappingProxyType(
    {
        "board": TierPolicy(Priority.HIGH, 300),
        "columns": TierPolicy(Priority.HIGH, 300),
        "user": TierPolicy(Priority.HIGH, 1800),
        "user_projects": TierPolicy(Priority.HIGH, 1800),
        "project": TierPolicy(Priority.MEDIUM, 600),
        "project_categories": TierPolicy(Priority.MEDIUM, 600),
        "analytics": TierPolicy(Priority.LOW, 60),
    }
)


class PriorityPolicy:
    """
    Static category -> (priority tier, default TTL) table.

    Built once at startup from the defaults plus configured overrides and
    read-only afterwards. Unknown categories get the medium tier and the
    configured default TTL.
    """

    def __init__(
        self,
        overrides: Mapping[str, tuple[str, int]] | None = None,
        default_ttl: int = 300,
    ):
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        table = dict(DEFAULT_POLICIES)
        for category, (priority, ttl) in (overrides or {}).items():
            if ttl <= 0:
                raise ValueError(f"TTL for category {category!r} must be positive")
            table[category] = TierPolicy(Priority(priority), int(ttl))
        self._table = MappingProxyType(table)
        self._fallback = TierPolicy(Priority.MEDIUM, default_ttl)

    @property
    def categories(self) -> Mapping[str, TierPolicy]:
        return self._table

    def for_category(self, category: str) -> TierPolicy:
        return self._table.get(category, self._fallback)

    def key(self, category: str, item_id: str) -> str:
        _check_part("category", category)
        if not item_id:
            raise ValueError("cache id must be non-empty")
        return f"{self.for_category(category).priority.value}:{category}:{item_id}"

    def variants(self, category: str, item_id: str) -> list[str]:
        """Keys for an item under every tier, for tier-agnostic deletes."""
        _check_part("category", category)
        return [f"{priority.value}:{category}:{item_id}" for priority in Priority]


def _check_part(name: str, value: str):
    if not value or ":" in value:
        raise ValueError(f"{name} must be non-empty and must not contain ':'")
