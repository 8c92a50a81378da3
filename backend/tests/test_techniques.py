"""Tests for the built-in anonymization techniques and the registry."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from veil.errors import (
    InvalidParameterError,
    TechniqueNotApplicableError,
    TechniqueNotRegisteredError,
)
from veil.models import AnonymizationTechnique
from veil.techniques.base import is_numeric_type
from veil.techniques.masking import mask
from veil.techniques.registry import TechniqueRegistry, build_default_registry
from veil.techniques.suppression import default_value


class TestGeneralization:
    def test_integer_is_binned_by_ten(self, registry: TechniqueRegistry):
        assert registry.apply(AnonymizationTechnique.GENERALIZATION, 34) == "30-39"

    def test_custom_bin_width(self, registry: TechniqueRegistry):
        result = registry.apply(AnonymizationTechnique.GENERALIZATION, 34, {"granularity": 5})
        assert result == "30-34"

    def test_negative_integer_floors(self, registry: TechniqueRegistry):
        assert registry.apply(AnonymizationTechnique.GENERALIZATION, -3) == "-10--1"

    def test_float_is_binned(self, registry: TechniqueRegistry):
        assert registry.apply(AnonymizationTechnique.GENERALIZATION, 34.7) == "30-40"

    def test_decimal_floors_for_negatives(self, registry: TechniqueRegistry):
        assert registry.apply(AnonymizationTechnique.GENERALIZATION, Decimal("-3")) == "-10-0"

    def test_date_defaults_to_year(self, registry: TechniqueRegistry):
        result = registry.apply(AnonymizationTechnique.GENERALIZATION, dt.date(1990, 6, 15))
        assert result == dt.date(1990, 1, 1)

    def test_date_to_month(self, registry: TechniqueRegistry):
        result = registry.apply(
            AnonymizationTechnique.GENERALIZATION, dt.date(1990, 6, 15), {"granularity": 2}
        )
        assert result == dt.date(1990, 6, 1)

    def test_datetime_drops_time(self, registry: TechniqueRegistry):
        result = registry.apply(
            AnonymizationTechnique.GENERALIZATION,
            dt.datetime(1990, 6, 15, 13, 45),
            {"granularity": 3},
        )
        assert result == dt.datetime(1990, 6, 15)

    def test_string_keeps_leading_characters(self, registry: TechniqueRegistry):
        result = registry.apply(
            AnonymizationTechnique.GENERALIZATION, "10027", {"granularity": 3}
        )
        assert result == "100**"

    def test_zero_granularity_rejected(self, registry: TechniqueRegistry):
        with pytest.raises(InvalidParameterError):
            registry.apply(AnonymizationTechnique.GENERALIZATION, 34, {"granularity": 0})

    def test_bool_not_applicable(self, registry: TechniqueRegistry):
        with pytest.raises(TechniqueNotApplicableError):
            registry.apply(AnonymizationTechnique.GENERALIZATION, True)

    @pytest.mark.parametrize(
        "value", [float("nan"), float("inf"), float("-inf"), Decimal("NaN"), Decimal("-Infinity")]
    )
    def test_non_finite_number_not_applicable(self, registry: TechniqueRegistry, value):
        with pytest.raises(TechniqueNotApplicableError) as exc_info:
            registry.apply(
                AnonymizationTechnique.GENERALIZATION, value, {"granularity": 10}, field_name="age"
            )
        assert exc_info.value.field_name == "age"


class TestSuppression:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (42, 0),
            (3.14, 0.0),
            (True, False),
            (Decimal("9.99"), Decimal(0)),
            ("secret", None),
            (dt.date(2020, 1, 1), None),
            ([1, 2, 3], None),
        ],
    )
    def test_replaces_with_type_default(self, registry: TechniqueRegistry, value, expected):
        result = registry.apply(AnonymizationTechnique.SUPPRESSION, value)
        assert result == expected
        assert type(result) is type(expected)

    def test_default_value_walks_subclasses(self):
        class Score(int):
            pass

        assert default_value(Score) == 0


class TestPerturbation:
    def test_stays_within_noise_range(self, registry: TechniqueRegistry):
        for _ in range(50):
            result = registry.apply(
                AnonymizationTechnique.PERTURBATION, 100.0, {"noise_range": 0.1}
            )
            assert 90.0 <= result <= 110.0

    def test_integer_result_stays_integer(self, registry: TechniqueRegistry):
        result = registry.apply(AnonymizationTechnique.PERTURBATION, 85_000)
        assert isinstance(result, int)
        assert 76_500 <= result <= 93_500

    def test_decimal_result_stays_decimal(self, registry: TechniqueRegistry):
        result = registry.apply(AnonymizationTechnique.PERTURBATION, Decimal("100"))
        assert isinstance(result, Decimal)

    def test_zero_noise_keeps_value(self, registry: TechniqueRegistry):
        assert registry.apply(AnonymizationTechnique.PERTURBATION, 50, {"noise_range": 0}) == 50

    def test_negative_noise_range_rejected(self, registry: TechniqueRegistry):
        with pytest.raises(InvalidParameterError):
            registry.apply(AnonymizationTechnique.PERTURBATION, 50, {"noise_range": -0.5})

    def test_string_not_applicable(self, registry: TechniqueRegistry):
        with pytest.raises(TechniqueNotApplicableError):
            registry.apply(AnonymizationTechnique.PERTURBATION, "50")

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), Decimal("sNaN")])
    def test_non_finite_number_not_applicable(self, registry: TechniqueRegistry, value):
        with pytest.raises(TechniqueNotApplicableError):
            registry.apply(AnonymizationTechnique.PERTURBATION, value)


class TestDataMasking:
    def test_email_keeps_domain(self, registry: TechniqueRegistry):
        result = registry.apply(
            AnonymizationTechnique.DATA_MASKING,
            "john@example.com",
            {"preserve_start": 1, "preserve_domain": True},
        )
        assert result == "j***@example.com"

    def test_card_number_keeps_last_four(self, registry: TechniqueRegistry):
        result = registry.apply(
            AnonymizationTechnique.DATA_MASKING, "4111111111111111", {"preserve_end": 4}
        )
        assert result == "************1111"

    def test_custom_mask_char(self, registry: TechniqueRegistry):
        result = registry.apply(
            AnonymizationTechnique.DATA_MASKING, "secret", {"mask_char": "#"}
        )
        assert result == "######"

    def test_short_value_fully_masked(self):
        assert mask("ab", 1, 1, "*") == "**"

    def test_multi_character_mask_rejected(self, registry: TechniqueRegistry):
        with pytest.raises(InvalidParameterError):
            registry.apply(AnonymizationTechnique.DATA_MASKING, "secret", {"mask_char": "**"})

    def test_number_not_applicable(self, registry: TechniqueRegistry):
        with pytest.raises(TechniqueNotApplicableError) as exc_info:
            registry.apply(AnonymizationTechnique.DATA_MASKING, 42, field_name="age")
        assert exc_info.value.metadata["field_name"] == "age"


class TestRegistry:
    def test_default_registry_contents(self, registry: TechniqueRegistry):
        assert set(registry.registered()) == {
            AnonymizationTechnique.GENERALIZATION,
            AnonymizationTechnique.SUPPRESSION,
            AnonymizationTechnique.PERTURBATION,
            AnonymizationTechnique.DATA_MASKING,
            AnonymizationTechnique.SWAPPING,
        }

    @pytest.mark.parametrize(
        "technique",
        [
            AnonymizationTechnique.K_ANONYMITY,
            AnonymizationTechnique.L_DIVERSITY,
            AnonymizationTechnique.T_CLOSENESS,
        ],
    )
    def test_metric_identifiers_are_not_registered(self, registry, technique):
        with pytest.raises(TechniqueNotRegisteredError):
            registry.apply(technique, "value")

    def test_empty_registry_raises_not_registered(self):
        with pytest.raises(TechniqueNotRegisteredError) as exc_info:
            TechniqueRegistry().get(AnonymizationTechnique.SUPPRESSION)
        assert exc_info.value.code == "anonymization.technique_not_registered"

    def test_dataset_technique_cannot_apply_to_single_value(self, registry: TechniqueRegistry):
        assert registry.is_dataset_technique(AnonymizationTechnique.SWAPPING)
        assert not registry.can_apply(AnonymizationTechnique.SWAPPING, int)
        with pytest.raises(TechniqueNotApplicableError):
            registry.apply(AnonymizationTechnique.SWAPPING, 42)

    def test_register_replaces_implementation(self):
        from veil.techniques.suppression import SuppressionTechnique

        class RedactAll(SuppressionTechnique):
            def apply(self, value, value_type, parameters):
                return "[REDACTED]"

        registry = build_default_registry()
        registry.register(RedactAll())
        assert registry.apply(AnonymizationTechnique.SUPPRESSION, "x") == "[REDACTED]"


class TestNumericTypes:
    def test_bool_is_not_numeric(self):
        assert not is_numeric_type(bool)

    @pytest.mark.parametrize("value_type", [int, float, Decimal])
    def test_numeric_types(self, value_type):
        assert is_numeric_type(value_type)
