"""
Positional fit ratings.

A player's rating at a position is the weighted sum of their attributes
after a familiarity adjustment:

  primary position       +0
  secondary position     -1
  any other position     penalty by distance between position groups

Weights are ordered (passing, shooting, defense, dribbling, pace, physical,
goalkeeping) and each row sums to 1, so the adjustment shifts the rating
roughly one-for-one.
"""
import math
from typing import Any, Dict, List, Sequence

POSITION_ORDER = [
    "GK", "RB", "LB", "CB", "RWB", "LWB", "CDM", "RM",
    "LM", "CM", "CAM", "RW", "LW", "CF", "ST",
]
UNKNOWN_POSITION_INDEX = 999

ATTRIBUTES = ("passing", "shooting", "defense", "dribbling", "pace", "physical", "goalkeeping")

ATTRIBUTE_WEIGHTING = [
    (("GK",), (0, 0, 0, 0, 0, 0, 1)),
    (("CB",), (0.05, 0, 0.64, 0.09, 0.02, 0.2, 0)),
    (("LWB", "RWB", "LB", "RB"), (0.19, 0, 0.44, 0.17, 0.1, 0.1, 0)),
    (("CDM",), (0.28, 0, 0.4, 0.17, 0, 0.15, 0)),
    (("CM", "LM", "RM"), (0.43, 0.12, 0.1, 0.29, 0, 0.06, 0)),
    (("CAM",), (0.34, 0.21, 0, 0.38, 0.07, 0, 0)),
    (("CF", "LW", "RW"), (0.24, 0.23, 0, 0.4, 0.13, 0, 0)),
    (("ST",), (0.1, 0.46, 0, 0.29, 0.1, 0.05, 0)),
]

# Pitch order of position groups; familiarity decays with distance.
POSITION_GROUPS = [
    ("GK",),
    ("CB", "LB", "RB"),
    ("LWB", "RWB"),
    ("CDM",),
    ("CM", "LM", "RM"),
    ("CAM",),
    ("LW", "RW"),
    ("CF", "ST"),
]
SECONDARY_ADJUSTMENT = -1
GROUP_DISTANCE_PENALTY = {0: -5, 1: -8, 2: -12}
FAR_PENALTY = -20

_GROUP_OF = {pos: i for i, group in enumerate(POSITION_GROUPS) for pos in group}
_WEIGHTS = {pos: weights for positions, weights in ATTRIBUTE_WEIGHTING for pos in positions}


def position_index(position: str) -> int:
    """Sort index of a position; unknown positions sort last."""
    try:
        return POSITION_ORDER.index(position)
    except ValueError:
        return UNKNOWN_POSITION_INDEX


def familiarity_adjustment(position: str, positions: Sequence[str]) -> int:
    """Attribute adjustment for playing `position` given the player's own positions."""
    if not positions:
        return FAR_PENALTY
    primary, secondary = positions[0], positions[1:]
    if position == primary:
        return 0
    if position in secondary:
        return SECONDARY_ADJUSTMENT
    if "GK" in (position, primary):
        return FAR_PENALTY
    distance = abs(_GROUP_OF.get(position, 0) - _GROUP_OF.get(primary, 0))
    return GROUP_DISTANCE_PENALTY.get(distance, FAR_PENALTY)


def position_ratings(metadata: Dict[str, Any], sort: bool = True) -> List[Dict[str, Any]]:
    """Rating and delta-vs-overall for every position.

    Args:
        metadata: Raw player metadata dict (positions, overall, attribute keys).
        sort: Best rating first when True, pitch order otherwise.

    Returns:
        List of {"position", "rating", "difference"} dicts.
    """
    positions = metadata.get("positions") or []
    overall = metadata.get("overall") or 0
    ratings = []
    for position in POSITION_ORDER:
        adjustment = familiarity_adjustment(position, positions)
        weights = _WEIGHTS[position]
        total = sum(
            ((metadata.get(attr) or 0) + adjustment) * weight
            for attr, weight in zip(ATTRIBUTES, weights)
        )
        rating = math.floor(total + 0.5)
        ratings.append(
            {"position": position, "rating": rating, "difference": rating - overall}
        )
    if sort:
        ratings.sort(key=lambda r: r["rating"], reverse=True)
    return ratings
