"""Tests for number parsing helpers."""

import pytest

from immo_watch.utils.parsing import format_number, parse_number, round_half_up


class TestParseNumber:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (1200, 1200.0),
            (70.5, 70.5),
            ("1.250 €", 1250.0),
            ("1.234,50 €", 1234.5),
            ("70,5 m²", 70.5),
            ("70 m²", 70.0),
            ("3,5 Zimmer", 3.5),
            ("2.5", 2.5),
            ("12.345.678", 12345678.0),
            ("ab 950,- €", 950.0),
        ],
    )
    def test_parses(self, value: object, expected: float) -> None:
        assert parse_number(value) == expected

    @pytest.mark.parametrize(
        "value",
        [None, "", "Preis auf Anfrage", 0, "0", -5, "0,00 €", True, float("nan"), [1]],
    )
    def test_unusable_values_are_none(self, value: object) -> None:
        assert parse_number(value) is None

    @pytest.mark.parametrize("value", [float("inf"), "9" * 400, 10**400])
    def test_overflowing_values_are_none(self, value: object) -> None:
        assert parse_number(value) is None


class TestFormatNumber:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(70.0, "70"), (70, "70"), (2.5, "2.5"), (1234.56, "1234.56")],
    )
    def test_format(self, value: float, expected: str) -> None:
        assert format_number(value) == expected


class TestRoundHalfUp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0.5, 1), (1.5, 2), (2.5, 3), (2.4999, 2), (7.5, 8), (0.0, 0)],
    )
    def test_rounds_halves_up(self, value: float, expected: int) -> None:
        assert round_half_up(value) == expected
