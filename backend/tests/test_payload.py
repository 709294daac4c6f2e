"""
Tests for the input/post payload parser
"""
import pytest

from telemetry_ingest.core.errors import ErrorKind, FormatError
from telemetry_ingest.services.params import DictParams
from telemetry_ingest.services.payload import PayloadParser


def parse(**params):
    return PayloadParser().parse(DictParams(params))


def parse_error(**params) -> str:
    with pytest.raises(FormatError) as excinfo:
        parse(**params)
    return str(excinfo.value)


class TestFormatSelection:
    
    def test_no_payload_parameter(self):
        assert parse_error(node="10") == "Request contains no data via csv, json, fulljson or data"
    
    def test_fulljson_wins_over_json_and_csv(self):
        payload = parse(fulljson='{"a": 1}', json="{b:2}", csv="3")
        assert payload.inputs == {"a": 1}
    
    def test_json_wins_over_csv(self):
        payload = parse(json="{b:2}", csv="3")
        assert payload.inputs == {"b": 2.0}
    
    def test_csv_preferred_over_data(self):
        payload = parse(csv="1", data="2,3")
        assert payload.inputs == {"1": 1.0}
    
    def test_errors_are_format_errors(self):
        with pytest.raises(FormatError) as excinfo:
            parse(csv="abc")
        assert excinfo.value.kind == ErrorKind.FORMAT


class TestFullJson:
    
    def test_values_pass_through(self):
        payload = parse(fulljson='{"power1": 100, "status": "on", "missing": null}')
        assert payload.inputs == {"power1": 100, "status": "on", "missing": None}
        assert payload.time is None
    
    def test_time_key_is_extracted_case_insensitively(self):
        payload = parse(fulljson='{"power1": 100, "TIME": 1700000000}')
        assert "TIME" not in payload.inputs
        assert payload.inputs == {"power1": 100}
        assert payload.time == 1700000000
    
    def test_date_string_time_is_kept_for_the_resolver(self):
        payload = parse(fulljson='{"a": 1, "time": "2023-11-14T22:13:20Z"}')
        assert payload.time == "2023-11-14T22:13:20Z"
    
    @pytest.mark.parametrize("datain", ["[1, 2]", "nope", "42", '{"a": {"b": 1}}', '{"a": [1]}'])
    def test_rejects_anything_but_a_flat_object(self, datain):
        assert parse_error(fulljson=datain) == "fulljson must be valid JSON"
    
    def test_empty(self):
        assert parse_error(fulljson="") == "fulljson parameter provided but empty"


class TestLegacyJson:
    
    def test_unquoted_pairs(self):
        payload = parse(json="{a:100,b:200}")
        assert payload.inputs == {"a": 100.0, "b": 200.0}
    
    def test_non_numeric_value_names_the_field(self):
        assert parse_error(json="{a:100,b:not_a_number}") == "Legacy JSON value for 'b' must be numeric"
    
    def test_time_pair(self):
        payload = parse(json="{power1:100,time:1700000000}")
        assert payload.inputs == {"power1": 100.0}
        assert payload.time == 1700000000
    
    def test_time_must_be_numeric(self):
        assert parse_error(json="{a:1,time:soon}") == "Time value must be numeric"
    
    def test_null_literal(self):
        assert parse(json="{a:null,b:1.5}").inputs == {"a": None, "b": 1.5}
    
    def test_pair_without_colon(self):
        assert parse_error(json="{a}") == "Legacy JSON format error: expected key:value"
    
    def test_trailing_comma_is_an_error(self):
        assert parse_error(json="{a:1,}") == "Legacy JSON format error: expected key:value"
    
    def test_empty_key(self):
        assert parse_error(json="{:5}") == "Legacy JSON key is empty or invalid"
    
    def test_strict_json_is_tried_first(self):
        payload = parse(json='{"a": "x", "Time": 5}')
        assert payload.inputs == {"a": "x"}
        assert payload.time == 5
    
    def test_quotes_and_spaces_are_tolerated(self):
        payload = parse(json="{ 'power1' : 100 , power2: -2.5 }")
        assert payload.inputs == {"power1": 100.0, "power2": -2.5}
    
    @pytest.mark.parametrize("datain", ["", "   "])
    def test_empty(self, datain):
        assert parse_error(json=datain) == "json parameter provided but empty"


class TestCsv:
    
    def test_positional_values_are_numbered_from_one(self):
        payload = parse(csv="100,200,300")
        assert list(payload.inputs.items()) == [("1", 100.0), ("2", 200.0), ("3", 300.0)]
        assert payload.time is None
    
    def test_named_values_do_not_advance_the_index(self):
        payload = parse(csv="10,a:5,20")
        assert payload.inputs == {"1": 10.0, "a": 5.0, "2": 20.0}
    
    def test_data_alias(self):
        assert parse(data="1:100,2:150").inputs == {"1": 100.0, "2": 150.0}
    
    def test_null_values(self):
        assert parse(csv="1,null,x:null").inputs == {"1": 1.0, "2": None, "x": None}
    
    def test_unicode_names_survive_sanitizing(self):
        assert parse(csv="température°:21.5").inputs == {"température": 21.5}
    
    def test_positional_value_must_be_numeric(self):
        assert parse_error(csv="100,abc") == "CSV value must be numeric"
    
    def test_named_value_must_be_numeric(self):
        assert parse_error(csv="a:xyz") == "CSV value for key 'a' must be numeric"
    
    def test_non_ascii_digits_are_not_numeric(self):
        assert parse_error(csv="٣") == "CSV value must be numeric"
        assert parse_error(csv="a:٣") == "CSV value for key 'a' must be numeric"
    
    def test_empty_key(self):
        assert parse_error(csv=":5") == "CSV key is empty"
    
    def test_empty(self):
        assert parse_error(csv="") == "csv/data parameter provided but empty"
