import datetime
import random
from decimal import Decimal

import pytest

from h2_registry.marketplace.pricing import (
    PricingCalculator,
    age_in_days,
    parse_volume,
    round_half_up,
    volume_multiplier,
)
from h2_registry.tests.fakes import NOW, fixed_clock, make_credit


@pytest.fixture()
def calculator() -> PricingCalculator:
    return PricingCalculator(base_price=25.0, clock=fixed_clock)


class TestPricingFactors:
    @pytest.mark.parametrize(
        "volume, expected",
        [
            (Decimal("10"), Decimal("1")),
            (Decimal("50"), Decimal("1")),
            (Decimal("50.01"), Decimal("0.95")),
            (Decimal("100"), Decimal("0.95")),
            (Decimal("100.01"), Decimal("0.90")),
        ],
    )
    def test_volume_tiers_are_exclusive(self, volume, expected):
        assert volume_multiplier(volume) == expected

    def test_parse_volume(self):
        assert parse_volume("12.5") == Decimal("12.5")
        assert parse_volume(None) == Decimal("0")
        assert parse_volume("a lot") == Decimal("0")
        assert parse_volume(float("nan")) == Decimal("0")

    def test_round_half_up(self):
        assert round_half_up(Decimal("28.875")) == Decimal("28.88")
        assert round_half_up(Decimal("23.085")) == Decimal("23.09")
        assert round_half_up(Decimal("23.084")) == Decimal("23.08")

    def test_age_in_days(self):
        created = NOW - datetime.timedelta(days=3, hours=12)
        assert age_in_days(created, NOW) == pytest.approx(3.5)

        # Naive timestamps are read as UTC
        assert age_in_days(created.replace(tzinfo=None), NOW) == pytest.approx(3.5)
        assert age_in_days(created.isoformat(), NOW) == pytest.approx(3.5)

        assert age_in_days(None, NOW) is None
        assert age_in_days("", NOW) is None
        assert age_in_days("not a date", NOW) is None


class TestCalculatePrice:
    def test_neutral_credit_is_base_price(self, calculator: PricingCalculator):
        result = calculator.calculate_price(make_credit(volume=10, age_days=10))

        assert result.unit_price == 25.0
        assert result.total_price == 250.0
        assert result.factors.price_multiplier == 1.0
        assert result.factors.volume_discount is False
        assert result.factors.blockchain_premium is False
        assert result.factors.production_method == ""

    def test_large_stale_solar_credit(self, calculator: PricingCalculator):
        credit = make_credit(volume=120, age_days=40, production_method="solar")

        result = calculator.calculate_price(credit)

        # 25 * 0.90 * 0.95 * 1.08 = 23.085
        assert result.unit_price == 23.09
        assert result.total_price == 2770.80
        assert result.factors.volume_discount is True
        assert result.factors.volume_multiplier == 0.90
        assert result.factors.age_multiplier == 0.95
        assert result.factors.production_method_multiplier == 1.08
        assert result.factors.age_days == pytest.approx(40)

    def test_fresh_verified_credit(self, calculator: PricingCalculator):
        credit = make_credit(
            volume=10, age_days=2, blockchain_reference="0xabc123"
        )

        result = calculator.calculate_price(credit)

        # 25 * 1.10 * 1.05 = 28.875
        assert result.unit_price == 28.88
        assert result.total_price == 288.80
        assert result.factors.blockchain_premium is True
        assert result.factors.age_multiplier == 1.05

    def test_total_is_rounded_from_rounded_unit_price(
        self, calculator: PricingCalculator
    ):
        credit = make_credit(volume=3, age_days=2, blockchain_reference="0xabc123")

        result = calculator.calculate_price(credit)

        assert result.unit_price == 28.88
        assert result.total_price == 86.64

    def test_age_boundaries(self, calculator: PricingCalculator):
        # Exactly 7 and 30 days old are both unadjusted
        assert calculator.calculate_price(make_credit(age_days=7)).unit_price == 25.0
        assert calculator.calculate_price(make_credit(age_days=30)).unit_price == 25.0
        assert calculator.calculate_price(make_credit(age_days=6.9)).unit_price == 26.25
        assert calculator.calculate_price(make_credit(age_days=30.5)).unit_price == 23.75

    def test_missing_created_at_has_no_age_adjustment(
        self, calculator: PricingCalculator
    ):
        credit = make_credit(volume=10).model_copy(update={"created_at": None})

        result = calculator.calculate_price(credit)

        assert result.unit_price == 25.0
        assert result.factors.age_days is None
        assert result.factors.age_multiplier == 1.0

    def test_production_method_from_metadata(self, calculator: PricingCalculator):
        credit = make_credit(volume=10, metadata={"productionMethod": "Wind"})

        result = calculator.calculate_price(credit)

        assert result.factors.production_method == "wind"
        assert result.unit_price == 26.5

    def test_column_takes_precedence_over_metadata(
        self, calculator: PricingCalculator
    ):
        credit = make_credit(
            volume=10,
            production_method="HYDRO",
            metadata={"productionMethod": "solar"},
        )

        assert calculator.calculate_price(credit).unit_price == 26.0

    def test_unknown_production_method_is_unadjusted(
        self, calculator: PricingCalculator
    ):
        credit = make_credit(volume=10, production_method="biomass")

        result = calculator.calculate_price(credit)

        assert result.unit_price == 25.0
        assert result.factors.production_method_multiplier == 1.0

    def test_unusable_volume_prices_at_zero(self, calculator: PricingCalculator):
        result = calculator.calculate_price(
            {"volume": "unknown", "created_at": NOW.isoformat()}
        )

        assert result.volume == 0.0
        assert result.total_price == 0.0
        assert result.unit_price == 26.25

    def test_mapping_input_with_stored_column_names(
        self, calculator: PricingCalculator
    ):
        result = calculator.calculate_price(
            {
                "volume": 60,
                "created_at": (NOW - datetime.timedelta(days=10)).isoformat(),
                "credit_metadata": {"productionMethod": "solar"},
            }
        )

        # 25 * 0.95 * 1.08 = 25.65
        assert result.unit_price == 25.65
        assert result.total_price == 1539.0


class TestPricingProperties:
    @pytest.mark.parametrize(
        "volume, unit_price, total_price",
        [
            (1, 25.0, 25.0),
            # 23.75 * 50.0001 = 1187.502375
            (50.0001, 23.75, 1187.50),
            (1000, 22.50, 22500.0),
        ],
    )
    def test_volume_boundaries(
        self, calculator: PricingCalculator, volume, unit_price, total_price
    ):
        result = calculator.calculate_price(make_credit(volume=volume, age_days=10))

        assert result.unit_price == unit_price
        assert result.total_price == total_price

    @pytest.mark.parametrize(
        "credit_fields",
        [
            {"volume": 10, "age_days": 10},
            {"volume": 10, "age_days": 10, "production_method": "solar"},
            {"volume": 75, "age_days": 45, "production_method": "wind"},
            {"volume": 500, "age_days": 1, "production_method": "hydro"},
        ],
    )
    def test_blockchain_reference_adds_ten_percent(
        self, calculator: PricingCalculator, credit_fields
    ):
        unverified = calculator.calculate_price(make_credit(**credit_fields))
        verified = calculator.calculate_price(
            make_credit(blockchain_reference="0xabc123", **credit_fields)
        )

        assert verified.factors.price_multiplier == pytest.approx(
            unverified.factors.price_multiplier * 1.10, abs=2e-4
        )
        assert verified.factors.blockchain_premium is True
        assert unverified.factors.blockchain_premium is False

    def test_blockchain_premium_on_identical_credits(self, calculator: PricingCalculator):
        solar = {"volume": 10, "age_days": 10, "production_method": "solar"}

        unverified = calculator.calculate_price(make_credit(**solar))
        verified = calculator.calculate_price(
            make_credit(blockchain_reference="0xabc123", **solar)
        )

        # 25 * 1.08 = 27.00, 27.00 * 1.10 = 29.70
        assert unverified.unit_price == 27.0
        assert verified.unit_price == 29.7
        assert verified.total_price == 297.0

    def test_total_is_rounded_unit_price_times_volume(
        self, calculator: PricingCalculator
    ):
        rng = random.Random(20250601)
        methods = ["solar", "wind", "hydro", None]

        for _ in range(200):
            volume = round(rng.uniform(0.001, 2000), 3)
            credit = make_credit(
                volume=volume,
                age_days=rng.choice([1, 10, 45]),
                production_method=rng.choice(methods),
                blockchain_reference=rng.choice(["0xabc", None]),
            )

            result = calculator.calculate_price(credit)

            expected = round_half_up(
                Decimal(str(result.unit_price)) * Decimal(str(volume))
            )
            assert result.total_price == float(expected), volume
