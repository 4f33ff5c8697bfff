from qbank_scoring.services.answer_keys import RawScalar, StructuredValue, decode_options, decode_stored, encode


def test_json_key_decodes_structured():
    decoded = decode_stored('["A", "C"]')
    assert isinstance(decoded, StructuredValue)
    assert decoded.value == ["A", "C"]


def test_bare_letter_falls_back_to_raw_scalar():
    decoded = decode_stored("B")
    assert isinstance(decoded, RawScalar)
    assert decoded.value == "B"


def test_empty_and_missing_keys():
    assert decode_stored(None) == RawScalar(None)
    assert decode_stored("").value is None


def test_already_decoded_json_column_passes_through():
    assert decode_stored({"condition": "X"}) == StructuredValue({"condition": "X"})


def test_options_only_accept_objects():
    assert decode_options('{"tolerance": 0.5}') == {"tolerance": 0.5}
    assert decode_options('["A", "B"]') == {}
    assert decode_options("not json") == {}


def test_encode_is_stable():
    assert encode({"b": 1, "a": [2]}) == '{"a": [2], "b": 1}'
