from __future__ import annotations

from partflip.pricing import amount_from_value, parse_price, price_in_band, to_number


def test_parse_price_with_country_prefix_and_commas() -> None:
    parsed = parse_price("US $1,299.50")
    assert parsed.amount == "1299.50"
    assert parsed.currency == "US"


def test_parse_price_free_is_unknown_not_zero() -> None:
    parsed = parse_price("Free")
    assert parsed.amount == ""
    assert parsed.currency == ""
    assert parsed.known is False


def test_parse_price_symbol_only() -> None:
    parsed = parse_price("$45.00")
    assert parsed.amount == "45.00"
    assert parsed.currency == "$"


def test_parse_price_range_takes_first_amount() -> None:
    parsed = parse_price("£129.99 to £159.99")
    assert parsed.amount == "129.99"
    assert parsed.currency == "£"


def test_parse_price_bare_number_defaults_to_dollar() -> None:
    parsed = parse_price("85")
    assert parsed.amount == "85"
    assert parsed.currency == "$"


def test_parse_price_empty_input() -> None:
    assert parse_price(None).known is False
    assert parse_price("").known is False


def test_to_number() -> None:
    assert to_number("1,299.50") == 1299.50
    assert to_number("") is None
    assert to_number("n/a") is None


def test_amount_from_structured_values() -> None:
    assert amount_from_value(45) == "45.00"
    assert amount_from_value(12.5) == "12.50"
    assert amount_from_value("USD 30.10") == "30.10"
    assert amount_from_value(None) == ""
    assert amount_from_value(True) == ""


def test_price_in_band() -> None:
    assert price_in_band("150.00", 100, 400) is True
    assert price_in_band("100", 100, 400) is True
    assert price_in_band("400", 100, 400) is True
    assert price_in_band("99.99", 100, 400) is False
    assert price_in_band("400.01", 100, 400) is False


def test_unknown_price_passes_every_band() -> None:
    assert price_in_band("", 100, 400) is True
    assert price_in_band(None, 0, 1) is True


def test_open_band_keeps_everything() -> None:
    assert price_in_band("5", None, None) is True


def test_parse_price_leading_decimal_point() -> None:
    parsed = parse_price("$.99")
    assert parsed.amount == "0.99"
    assert parsed.currency == "$"
    assert to_number(".99") == 0.99
    assert price_in_band(".99", 1.0, None) is False
