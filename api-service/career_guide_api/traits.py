"""Trait space: the fixed, ordered personality/skill dimensions.

User profiles and catalog occupations are compared in the same space, so the
order of ``Trait`` members defines the layout of every vector built here.
"""

from enum import Enum
from typing import Mapping

import numpy as np

from career_guide_api.signals import MalformedSignalError


class UnknownTraitError(MalformedSignalError):
    """Raised when a trait name is not part of the trait space."""

    pass


class Trait(str, Enum):
    """Closed set of trait dimensions."""

    ANALYTICAL = "analytical"
    PROBLEM_SOLVING = "problem-solving"
    CREATIVITY = "creativity"
    INNOVATION = "innovation"
    DETAIL_ORIENTED = "detail-oriented"
    INDEPENDENT = "independent"
    TEAMWORK = "teamwork"
    LEADERSHIP = "leadership"
    COMMUNICATION = "communication"
    ORGANIZATIONAL = "organizational"
    EMPATHY = "empathy"
    DESIGN = "design"
    SERVICE = "service"
    TEACHING = "teaching"
    COLLABORATIVE = "collaborative"


TRAIT_NAMES: tuple[str, ...] = tuple(t.value for t in Trait)
TRAIT_INDEX: dict[str, int] = {name: i for i, name in enumerate(TRAIT_NAMES)}
DIMENSIONS = len(TRAIT_NAMES)

# Spelling variants seen in collaborator payloads
_ALIASES = {
    "problem_solving": "problem-solving",
    "problemsolving": "problem-solving",
    "detail_oriented": "detail-oriented",
    "detail oriented": "detail-oriented",
    "creative": "creativity",
    "organized": "organizational",
    "organisational": "organizational",
    "empathetic": "empathy",
    "collaboration": "collaborative",
}


def parse_trait(name: str) -> Trait:
    """Resolve a trait name (case-insensitive, common aliases accepted).

    Raises:
        UnknownTraitError: If the name is not a trait dimension.
    """
    if not isinstance(name, str):
        raise UnknownTraitError(f"Trait name must be a string, got {type(name).__name__}")
    key = name.strip().lower()
    key = _ALIASES.get(key, key)
    if key not in TRAIT_INDEX:
        raise UnknownTraitError(f"Unknown trait dimension: {name!r}")
    return Trait(key)


def clamp_unit(value: float) -> float:
    """Clamp a value to [0, 1]; NaN and non-numbers collapse to 0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return max(0.0, min(1.0, value))


def validate_vector(values: Mapping[str, float]) -> dict[str, float]:
    """Normalize a trait mapping to exactly the trait space.

    Unknown dimensions are rejected, missing ones default to 0, and every
    value is clamped to [0, 1].
    """
    vector = {name: 0.0 for name in TRAIT_NAMES}
    for name, value in values.items():
        trait = parse_trait(name)
        vector[trait.value] = clamp_unit(value)
    return vector


def to_array(values: Mapping[str, float]) -> np.ndarray:
    """Lay out a trait mapping as a float array in trait-space order."""
    array = np.zeros(DIMENSIONS, dtype=float)
    for name, value in values.items():
        index = TRAIT_INDEX.get(name)
        if index is not None:
            array[index] = clamp_unit(value)
    return array


def from_array(array: np.ndarray) -> dict[str, float]:
    """Inverse of ``to_array``."""
    return {name: clamp_unit(array[i]) for i, name in enumerate(TRAIT_NAMES)}
