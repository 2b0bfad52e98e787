"""Tests for classification verdict parsing and coercion."""

from datetime import date

import pytest

from subscan.ai.verdict import (
    VerdictParseError,
    extract_json_object,
    parse_price,
    parse_verdict,
)


def test_extracts_object_from_prose_and_fences():
    text = 'Sure! Here you go:\n```json\n{"is_subscription": true, "subscription_name": "Netflix"}\n```\nThanks'
    assert extract_json_object(text) == '{"is_subscription": true, "subscription_name": "Netflix"}'


def test_braces_inside_strings_do_not_end_the_object():
    text = 'prefix {"subscription_name": "Weird } name {", "nested": {"a": "\\"}"}} suffix {"x": 1}'
    assert extract_json_object(text) == '{"subscription_name": "Weird } name {", "nested": {"a": "\\"}"}}'


def test_positive_verdict_is_coerced():
    verdict = parse_verdict(
        '{"is_subscription": true, "subscription_name": " Spotify ", "price": "$9.99", '
        '"currency": "usd", "billing_cycle": "Monthly", "next_billing_date": "2024-02-01", '
        '"service_provider": "Spotify AB", "confidence_score": "0.92"}'
    )

    assert verdict.is_positive
    assert verdict.subscription_name == "Spotify"
    assert verdict.price == 9.99
    assert verdict.currency == "USD"
    assert verdict.billing_cycle == "monthly"
    assert verdict.next_billing_date == date(2024, 2, 1)
    assert verdict.service_provider == "Spotify AB"
    assert verdict.confidence_score == pytest.approx(0.92)


def test_defaults_for_missing_fields():
    verdict = parse_verdict('{"is_subscription": true, "subscription_name": "Hulu"}')

    assert verdict.price is None
    assert verdict.currency == "USD"
    assert verdict.billing_cycle == "monthly"
    assert verdict.next_billing_date is None
    assert verdict.confidence_score == 0.5


@pytest.mark.parametrize(
    "raw,expected",
    [("annual", "yearly"), ("Annually", "yearly"), ("quarter", "quarterly"), ("weekly", "weekly"), ("biweekly", "monthly"), (None, "monthly")],
)
def test_billing_cycle_normalization(raw, expected):
    verdict = parse_verdict(
        '{"is_subscription": true, "subscription_name": "X", "billing_cycle": %s}'
        % ("null" if raw is None else f'"{raw}"')
    )
    assert verdict.billing_cycle == expected


def test_unparsable_values_become_null():
    verdict = parse_verdict(
        '{"is_subscription": true, "subscription_name": "Gym", "price": "free trial", '
        '"next_billing_date": "next month", "confidence_score": "high", "currency": 12}'
    )

    assert verdict.price is None
    assert verdict.next_billing_date is None
    assert verdict.confidence_score == 0.5
    assert verdict.currency == "USD"


def test_percentage_confidence_is_scaled():
    verdict = parse_verdict('{"is_subscription": false, "confidence_score": 85}')
    assert verdict.confidence_score == pytest.approx(0.85)


def test_subscription_without_name_is_not_positive():
    verdict = parse_verdict('{"is_subscription": true, "subscription_name": ""}')
    assert verdict.is_subscription
    assert not verdict.is_positive


def test_non_json_response_keeps_raw_text():
    with pytest.raises(VerdictParseError) as exc:
        parse_verdict("I could not determine anything about this email.")
    assert exc.value.raw_text == "I could not determine anything about this email."


@pytest.mark.parametrize(
    "raw",
    [
        "",
        '{"is_subscription": tru',
        '{"subscription_name": "Netflix"}',
        '{"is_subscription": "maybe"}',
        '{"is_subscription": true, "subscription_name": ["a", "b"]}',
        "{not json at all}",
    ],
)
def test_structurally_invalid_responses(raw):
    with pytest.raises(VerdictParseError):
        parse_verdict(raw)


@pytest.mark.parametrize(
    "value,expected",
    [
        (9.99, 9.99),
        ("9.99", 9.99),
        ("$1,299.00 USD", 1299.0),
        ("EUR 4", 4.0),
        (0, 0.0),
        ("n/a", None),
        (True, None),
        (None, None),
        (-5, None),
        ("-12.50", None),
        (123456789012, None),
        ("$1,000,000,000.00", None),
        (float("inf"), None),
    ],
)
def test_parse_price(value, expected):
    assert parse_price(value) == expected


def test_out_of_range_price_is_dropped_not_fatal():
    verdict = parse_verdict(
        '{"is_subscription": true, "subscription_name": "Acme Cloud", "price": 123456789012}'
    )
    assert verdict.is_positive
    assert verdict.price is None
