"""Domain value objects."""

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from soundshelf.domain.entities import SourceType
from soundshelf.domain.exceptions import ValidationException


class FilterKind(str, Enum):
    """Kind of a smart-playlist filter."""

    GENRE = "genre"
    ARTIST = "artist"
    MIN_RATING = "min_rating"
    SOURCE = "source"
    ADDED_AFTER = "added_after"
    MIN_PLAY_COUNT = "min_play_count"


# Payload type per kind - checked in FilterExpression.__post_init__
_PAYLOAD_TYPES: dict[FilterKind, type | tuple[type, ...]] = {
    FilterKind.GENRE: str,
    FilterKind.ARTIST: str,
    FilterKind.MIN_RATING: (int, float),
    FilterKind.SOURCE: SourceType,
    FilterKind.ADDED_AFTER: datetime,
    FilterKind.MIN_PLAY_COUNT: int,
}


# Hey future me - this is a TAGGED VARIANT, not a dict of "where" fragments! The kind says
# how to read value, and persistence/filters.py is the ONLY place that turns it into SQL.
# Services never build query objects themselves. Adding a kind = enum value + payload type +
# one branch in filters.py.
@dataclass(frozen=True)
class FilterExpression:
    """One typed smart-playlist filter."""

    kind: FilterKind
    value: Any

    def __post_init__(self) -> None:
        """Validate payload type for the kind."""
        expected = _PAYLOAD_TYPES[self.kind]
        # bool is an int subclass, never a valid payload here
        if isinstance(self.value, bool) or not isinstance(self.value, expected):
            raise ValidationException(
                f"Invalid payload for filter {self.kind.value}: {self.value!r}"
            )
        if isinstance(self.value, str) and not self.value.strip():
            raise ValidationException(f"Filter {self.kind.value} needs a non-empty value")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-friendly dict."""
        value = self.value
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, SourceType):
            value = value.value
        return {"kind": self.kind.value, "value": value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilterExpression":
        """Parse from the stored JSON form."""
        try:
            kind = FilterKind(data["kind"])
        except (KeyError, ValueError) as e:
            raise ValidationException(f"Unknown filter kind in {data!r}") from e

        value = data.get("value")
        if kind == FilterKind.ADDED_AFTER and isinstance(value, str):
            value = datetime.fromisoformat(value)
        elif kind == FilterKind.SOURCE and isinstance(value, str):
            value = SourceType(value)
        return cls(kind=kind, value=value)


@dataclass(frozen=True)
class PlaylistCriteria:
    """Rule set of a smart playlist."""

    filters: list[FilterExpression] = field(default_factory=list)
    match_all: bool = True
    limit: int | None = None

    def __post_init__(self) -> None:
        """Validate limit."""
        if self.limit is not None and self.limit <= 0:
            raise ValidationException("Criteria limit must be positive")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-friendly dict."""
        return {
            "match": "all" if self.match_all else "any",
            "filters": [f.to_dict() for f in self.filters],
            "limit": self.limit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlaylistCriteria":
        """Parse from the stored JSON form."""
        return cls(
            filters=[FilterExpression.from_dict(f) for f in data.get("filters", [])],
            match_all=data.get("match", "all") != "any",
            limit=data.get("limit"),
        )


# Yo, sort FIRST, then join, then hash. Same set in any input order → same hash. The outbound
# smart playlist sync compares this against smart_playlists.track_ids_hash to skip unchanged
# playlists without diffing track lists.
def hash_track_ids(track_ids: Iterable[str]) -> str:
    """Order-independent SHA-256 fingerprint of a track id set.

    Args:
        track_ids: Remote track ids in any order

    Returns:
        Hex digest of the sorted ids joined with "|"
    """
    joined = "|".join(sorted(track_ids))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


__all__ = [
    "FilterExpression",
    "FilterKind",
    "PlaylistCriteria",
    "hash_track_ids",
]
