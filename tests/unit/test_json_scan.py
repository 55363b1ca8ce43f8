"""Unit tests for the tolerant JSON scanner used on model replies."""

from sightline.model_router import json_scan


class TestLocateJsonObject:
    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"success": true, "confidence": 0.9}\n```\nDone.'
        assert json_scan.locate_json_object(text) == '{"success": true, "confidence": 0.9}'

    def test_trailing_prose(self):
        text = '{"scene_description": "a hall"} I hope this helps! {not json}'
        assert json_scan.locate_json_object(text) == '{"scene_description": "a hall"}'

    def test_leading_prose(self):
        text = 'Sure. {"a": {"b": 1}}'
        assert json_scan.locate_json_object(text) == '{"a": {"b": 1}}'

    def test_braces_inside_strings_do_not_count(self):
        text = '{"description": "a sign reading }{", "x": 1} trailing'
        assert json_scan.locate_json_object(text) == '{"description": "a sign reading }{", "x": 1}'

    def test_truncated_object_falls_back_to_last_brace(self):
        text = '{"objects": [{"name": "lamp"}'
        assert json_scan.locate_json_object(text) == '{"objects": [{"name": "lamp"}'

    def test_no_object(self):
        assert json_scan.locate_json_object("I cannot see anything.") is None
        assert json_scan.locate_json_object("") is None
        assert json_scan.locate_json_object(None) is None

    def test_unlabelled_fence(self):
        text = '```\n{"k": "v"}\n```'
        assert json_scan.locate_json_object(text) == '{"k": "v"}'


class TestExtractors:
    BODY = (
        '{"name": "Red \\"Chair\\"", "confidence": "0.85", "success": true,'
        ' "affordances": ["sit", "examine"], "position": {"relative": "left", "x": 1.5},'
        ' "count": -3, "tags": "solo"}'
    )

    def test_string_with_escapes(self):
        assert json_scan.extract_string(self.BODY, "name") == 'Red "Chair"'

    def test_quoted_number(self):
        assert json_scan.extract_number(self.BODY, "confidence") == 0.85

    def test_negative_number(self):
        assert json_scan.extract_number(self.BODY, "count") == -3.0

    def test_bool(self):
        assert json_scan.extract_bool(self.BODY, "success") is True
        assert json_scan.extract_bool('{"success": false}', "success") is False

    def test_string_array(self):
        assert json_scan.extract_string_array(self.BODY, "affordances") == ["sit", "examine"]

    def test_bare_string_as_array(self):
        assert json_scan.extract_string_array(self.BODY, "tags") == ["solo"]

    def test_nested_string(self):
        assert json_scan.extract_nested_string(self.BODY, "position", "relative") == "left"
        assert json_scan.extract_nested_string('{"position": "near"}', "position", "relative") == "near"

    def test_missing_fields_default(self):
        assert json_scan.extract_string(self.BODY, "missing") == ""
        assert json_scan.extract_number(self.BODY, "missing") == 0.0
        assert json_scan.extract_bool(self.BODY, "missing") is False
        assert json_scan.extract_string_array(self.BODY, "missing") == []
        assert json_scan.extract_object(self.BODY, "missing") is None

    def test_tolerates_no_space_and_extra_space(self):
        assert json_scan.extract_string('{"k":"v"}', "k") == "v"
        assert json_scan.extract_string('{"k"  :   "v"}', "k") == "v"

    def test_object_blocks(self):
        body = '{"objects": [{"name": "a", "p": {"x": 1}}, {"name": "b [x]"}], "after": {"name": "z"}}'
        blocks = json_scan.extract_object_blocks(body, "objects")
        assert len(blocks) == 2
        assert json_scan.extract_string(blocks[0], "name") == "a"
        assert json_scan.extract_string(blocks[1], "name") == "b [x]"

    def test_object_blocks_on_truncated_array(self):
        body = '{"objects": [{"name": "a"}, {"name": "b"'
        blocks = json_scan.extract_object_blocks(body, "objects")
        assert blocks == ['{"name": "a"}']

    def test_has_key(self):
        assert json_scan.has_key(self.BODY, "tags")
        assert not json_scan.has_key(self.BODY, "nope")
