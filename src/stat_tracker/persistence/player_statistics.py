"""
Player Statistics Record

One record per player identity. Records are superseded, never merged: the
next successful save replaces the stored row wholesale.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional


COUNTER_FIELDS = (
    "kills",
    "deaths",
    "bases_captured",
    "bases_lost",
    "total_xp",
    "rank",
    "supplies_delivered",
    "supply_delivery_count",
    "ai_kills",
    "vehicle_kills",
    "air_kills",
)

TIMING_FIELDS = (
    "connection_time",
    "last_session_duration",
    "total_playtime",
)

SEQUENCE_FIELDS = (
    "killed_by",
    "killed_by_weapon",
    "killed_by_team",
)

# columns a leaderboard may sort on
SORTABLE_FIELDS = COUNTER_FIELDS + TIMING_FIELDS

SCORE_WEIGHTS = {
    "kills": 10,
    "bases_captured": 50,
    "supplies_delivered": 1,
    "ai_kills": 5,
    "vehicle_kills": 20,
    "air_kills": 30,
}


@dataclass
class PlayerStatistics:
    """
    Gameplay statistics for one player.

    Attributes:
        player_uid: Stable external player identifier
        player_name: Last known display name
        killed_by / killed_by_weapon / killed_by_team: Parallel death
            history (killer name, weapon, killer team id)
        created_at / updated_at: ISO timestamps set by the repository
    """
    player_uid: str = ""
    player_name: str = ""

    kills: int = 0
    deaths: int = 0
    bases_captured: int = 0
    bases_lost: int = 0
    total_xp: int = 0
    rank: int = 0
    supplies_delivered: int = 0
    supply_delivery_count: int = 0
    ai_kills: int = 0
    vehicle_kills: int = 0
    air_kills: int = 0

    connection_time: float = 0.0
    last_session_duration: float = 0.0
    total_playtime: float = 0.0

    killed_by: List[str] = field(default_factory=list)
    killed_by_weapon: List[str] = field(default_factory=list)
    killed_by_team: List[int] = field(default_factory=list)

    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def fresh(cls, player_uid: str = "", player_name: str = "") -> "PlayerStatistics":
        """Empty record for a player with no stored statistics."""
        return cls(player_uid=player_uid, player_name=player_name)

    @property
    def score(self) -> int:
        return sum(getattr(self, name) * weight for name, weight in SCORE_WEIGHTS.items())

    @property
    def kd_ratio(self) -> float:
        if self.deaths == 0:
            return float(self.kills)
        return self.kills / self.deaths

    def record_death(self, killer_name: str, weapon: str = "Unknown", killer_team: int = -1) -> None:
        """Count a death and append to all three history sequences together."""
        self.deaths += 1
        self.killed_by.append(killer_name)
        self.killed_by_weapon.append(weapon)
        self.killed_by_team.append(killer_team)

    def copy(self) -> "PlayerStatistics":
        return PlayerStatistics.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayerStatistics":
        """
        Build a record from a plain mapping; unknown keys are ignored.

        Raises:
            TypeError / ValueError: If a value cannot be converted
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"Expected a mapping, got {type(data).__name__}")

        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {k: v for k, v in data.items() if k in known}

        for name in COUNTER_FIELDS:
            if name in kwargs:
                kwargs[name] = _as_int(name, kwargs[name])
        for name in TIMING_FIELDS:
            if name in kwargs:
                kwargs[name] = float(kwargs[name])
        for name in SEQUENCE_FIELDS:
            if name in kwargs:
                value = kwargs[name]
                if not isinstance(value, list):
                    raise TypeError(f"{name} must be a list")
                kwargs[name] = list(value)
        if "killed_by_team" in kwargs:
            kwargs["killed_by_team"] = [_as_int("killed_by_team", v) for v in kwargs["killed_by_team"]]

        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Storage rows
    # ------------------------------------------------------------------

    def to_row(self) -> Dict[str, Any]:
        """Column values for the ``player_stats`` table."""
        row = self.to_dict()
        for name in SEQUENCE_FIELDS:
            row[name] = json.dumps(row[name])
        return row

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PlayerStatistics":
        """
        Build a record from a ``player_stats`` row.

        Raises:
            TypeError / ValueError: If a column holds unreadable data
        """
        data = dict(row)
        for name in SEQUENCE_FIELDS:
            raw = data.get(name)
            data[name] = json.loads(raw) if raw else []
        return cls.from_dict(data)


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{name} must be an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{name} must be a whole number (got {value})")
        return int(value)
    return int(value)
