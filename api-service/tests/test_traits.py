"""Tests for the trait space."""

import math

import numpy as np
import pytest

from career_guide_api.signals import MalformedSignalError
from career_guide_api.traits import (
    DIMENSIONS,
    TRAIT_NAMES,
    Trait,
    UnknownTraitError,
    clamp_unit,
    from_array,
    parse_trait,
    to_array,
    validate_vector,
)


class TestParseTrait:
    """Tests for trait name resolution."""

    def test_known_trait(self) -> None:
        assert parse_trait("analytical") is Trait.ANALYTICAL

    def test_case_and_whitespace_insensitive(self) -> None:
        assert parse_trait("  Empathy ") is Trait.EMPATHY

    def test_aliases(self) -> None:
        assert parse_trait("problem_solving") is Trait.PROBLEM_SOLVING
        assert parse_trait("creative") is Trait.CREATIVITY

    def test_unknown_trait_rejected(self) -> None:
        with pytest.raises(UnknownTraitError):
            parse_trait("telepathy")

    def test_unknown_trait_is_malformed_signal(self) -> None:
        """Unknown traits are handled like any other malformed signal."""
        with pytest.raises(MalformedSignalError):
            parse_trait("telepathy")

    def test_non_string_rejected(self) -> None:
        with pytest.raises(UnknownTraitError):
            parse_trait(42)  # type: ignore[arg-type]


class TestClampUnit:
    """Tests for clamping to [0, 1]."""

    @pytest.mark.parametrize(
        "raw,expected",
        [(-0.5, 0.0), (0.0, 0.0), (0.42, 0.42), (1.0, 1.0), (7, 1.0), ("0.3", 0.3)],
    )
    def test_clamp(self, raw, expected) -> None:
        assert clamp_unit(raw) == pytest.approx(expected)

    def test_nan_and_garbage(self) -> None:
        assert clamp_unit(math.nan) == 0.0
        assert clamp_unit(None) == 0.0  # type: ignore[arg-type]
        assert clamp_unit("high") == 0.0  # type: ignore[arg-type]


class TestValidateVector:
    """Tests for trait vector normalization."""

    def test_fills_missing_dimensions(self) -> None:
        vector = validate_vector({"empathy": 0.8})
        assert set(vector) == set(TRAIT_NAMES)
        assert vector["empathy"] == 0.8
        assert vector["leadership"] == 0.0

    def test_clamps_values(self) -> None:
        vector = validate_vector({"empathy": 1.7, "design": -2})
        assert vector["empathy"] == 1.0
        assert vector["design"] == 0.0

    def test_rejects_unknown_dimension(self) -> None:
        with pytest.raises(UnknownTraitError):
            validate_vector({"empathy": 0.5, "charisma": 0.9})


class TestArrays:
    """Tests for numpy layout of trait vectors."""

    def test_layout_follows_trait_order(self) -> None:
        array = to_array({"analytical": 0.9, "collaborative": 0.2})
        assert array.shape == (DIMENSIONS,)
        assert array[0] == pytest.approx(0.9)
        assert array[-1] == pytest.approx(0.2)
        assert np.count_nonzero(array) == 2

    def test_unknown_keys_ignored(self) -> None:
        array = to_array({"charisma": 1.0})
        assert not array.any()

    def test_from_array_inverse(self) -> None:
        values = {"empathy": 0.5, "teaching": 0.25}
        assert from_array(to_array(values)) == validate_vector(values)
