"""Tests for extracted-data quality validation."""

import json

from autoscript.data_quality import locate_payload, percent, validate_extracted_data
from autoscript.models import QualityThresholds

from conftest import make_payload


class TestScenarios:
    """End-to-end validation scenarios."""

    def test_zero_items(self):
        outcome = validate_extracted_data('{"totalExtracted": 0, "items": []}')

        assert outcome.valid is False
        assert outcome.issues == ["No items extracted"]

    def test_price_rate_above_threshold(self):
        """19 of 20 priced (95%) passes a 90% requirement."""
        outcome = validate_extracted_data(make_payload(20, priced=19))

        assert outcome.valid is True
        assert outcome.issues == []

    def test_price_rate_below_threshold(self):
        """15 of 20 priced (75%) fails a 90% requirement."""
        outcome = validate_extracted_data(make_payload(20, priced=15))

        assert outcome.valid is False
        assert outcome.issues == ["Only 75% of items have valid prices (need 90%+)"]

    def test_rating_rate_below_threshold(self):
        outcome = validate_extracted_data(make_payload(10, rated=5))

        assert outcome.valid is False
        assert outcome.issues == ["Only 50% of items have valid ratings (need 80%+)"]


class TestPayloadTolerance:
    """Validation never fails for output it cannot interpret."""

    def test_no_payload(self):
        outcome = validate_extracted_data("Navigated to page\nDone.")
        assert outcome.valid is True
        assert outcome.issues == []

    def test_empty_output(self):
        assert validate_extracted_data("").valid is True

    def test_malformed_payload(self):
        outcome = validate_extracted_data('{"items": [{"price": "$1"}, oops}')
        assert outcome.valid is True
        assert outcome.issues == []

    def test_items_not_a_list(self):
        assert validate_extracted_data('{"items": "pending"}').valid is True

    def test_payload_surrounded_by_logs(self):
        output = "Loading...\nFound 20 items on page 1\n" + make_payload(20, priced=10) + "\n"
        outcome = validate_extracted_data(output)

        assert outcome.valid is False
        assert "50%" in outcome.issues[0]

    def test_json_log_line_before_payload(self):
        output = 'Sample item: {"name": "Widget"}\n{"totalExtracted": 0, "items": []}'
        outcome = validate_extracted_data(output)

        assert outcome.valid is False
        assert outcome.issues == ["No items extracted"]

    def test_last_payload_wins(self):
        output = (
            '{"page": 1, "items": [{"price": "$1", "rating": "4"}]}\n'
            'progress {"step": "scroll"}\n'
            + make_payload(20, priced=10)
        )
        outcome = validate_extracted_data(output)

        assert outcome.valid is False
        assert outcome.issues == ["Only 50% of items have valid prices (need 90%+)"]

    def test_nested_items_key_is_not_a_payload(self):
        assert locate_payload('{"meta": {"items": []}}') is None

    def test_string_encoded_payload(self):
        """eval output printed as a JSON string literal is unwrapped once."""
        doc = {"items": [{"price": "", "rating": "4"}, {"price": "", "rating": "5"}]}
        output = json.dumps(json.dumps(doc))

        outcome = validate_extracted_data(output)

        assert outcome.valid is False
        assert outcome.issues == ["Only 0% of items have valid prices (need 90%+)"]

    def test_locate_payload_none(self):
        assert locate_payload("no json here") is None

    def test_locate_payload_returns_document(self):
        payload = locate_payload('Done {"x": 1}\n{"totalExtracted": 1, "items": [{"name": "A"}]}')
        assert payload == {"totalExtracted": 1, "items": [{"name": "A"}]}


class TestPercent:
    def test_halves_round_up(self):
        assert percent(0.125) == 13
        assert percent(0.625) == 63

    def test_whole_values(self):
        assert percent(0.9) == 90
        assert percent(0.0) == 0
        assert percent(1.0) == 100


class TestThresholds:
    """Tests for configurable thresholds."""

    def test_placeholders_count_as_missing(self):
        items = [{"price": v, "rating": "4"} for v in ("N/A", "TBD", "null", "  ", "$3")]
        items.append({"rating": "4"})
        outcome = validate_extracted_data(json.dumps({"items": items}))

        assert outcome.issues == ["Only 17% of items have valid prices (need 90%+)"]

    def test_half_percentages_round_up(self):
        """1 of 8 priced is 12.5%, reported as 13%."""
        outcome = validate_extracted_data(make_payload(8, priced=1))

        assert outcome.issues == ["Only 13% of items have valid prices (need 90%+)"]

    def test_numeric_values_are_valid(self):
        items = [{"price": 19.99, "rating": 4.5} for _ in range(5)]
        assert validate_extracted_data(json.dumps({"items": items})).valid is True

    def test_min_item_count_does_not_short_circuit(self):
        """A low count is reported alongside rate issues."""
        thresholds = QualityThresholds(min_item_count=5)
        outcome = validate_extracted_data(make_payload(3, priced=0), thresholds=thresholds)

        assert outcome.valid is False
        assert len(outcome.issues) == 2
        assert outcome.issues[0].startswith("Only 3 items extracted (need 5+).")
        assert outcome.issues[1] == "Only 0% of items have valid prices (need 90%+)"

    def test_disabled_checks(self):
        thresholds = QualityThresholds(require_prices=False, require_ratings=False)
        outcome = validate_extracted_data(make_payload(10, priced=0, rated=0), thresholds=thresholds)

        assert outcome.valid is True

    def test_custom_rate(self):
        thresholds = QualityThresholds(min_price_rate=0.7)
        outcome = validate_extracted_data(make_payload(20, priced=15), thresholds=thresholds)

        assert outcome.valid is True
