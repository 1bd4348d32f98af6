"""
Unit tests for extracting JSON objects from model text.
"""

import pytest

from ghoststudio.errors import ResponseParseError
from ghoststudio.utils.json_extract import unwrap_json_response


class TestUnwrapJsonResponse:

    def test_plain_object(self):
        assert unwrap_json_response('{"a": 1}') == {"a": 1}

    def test_fenced_block_preferred(self):
        text = 'Sure! {"ignored": true}\n```json\n{"facts_v3": {"material": "wool"}}\n```\nDone.'
        assert unwrap_json_response(text) == {"facts_v3": {"material": "wool"}}

    def test_untagged_fence(self):
        assert unwrap_json_response("```\n{\"x\": [1, 2]}\n```") == {"x": [1, 2]}

    def test_bare_object_surrounded_by_prose(self):
        text = 'The merged record is {"notes": "brace } inside string", "n": {"m": 2}} as requested.'
        assert unwrap_json_response(text) == {"notes": "brace } inside string", "n": {"m": 2}}

    def test_broken_fence_falls_back_to_bare_object(self):
        text = '```json\n{not json}\n```\n{"ok": true}'
        assert unwrap_json_response(text) == {"ok": True}

    @pytest.mark.parametrize("text", ["", "   ", None, "no json here", "[1, 2, 3]", '{"unterminated": '])
    def test_unparsable_inputs_raise(self, text):
        with pytest.raises(ResponseParseError):
            unwrap_json_response(text)
