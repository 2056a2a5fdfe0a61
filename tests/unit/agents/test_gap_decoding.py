"""
Tests for decoding gap-extraction responses.
"""

import json

import pytest

from rmri.agents.gap_decoding import (
    decode_with_recovery,
    extract_gaps_from_text,
    parse_gap_items,
    repair_truncated_json,
    strip_code_fences,
)
from rmri.core.errors import MalformedLLMOutputError


GAPS = [
    {"description": "No evaluation on multilingual corpora", "type": "empirical", "priority": "high", "rationale": "English only"},
    {"description": "Scalability to million-node graphs is untested", "type": "methodological", "priority": "medium", "rationale": "Small graphs"},
]


class TestStripCodeFences:

    def test_json_fence(self):
        assert strip_code_fences('```json\n[1, 2]\n```') == "[1, 2]"

    def test_unterminated_fence(self):
        assert strip_code_fences('```json\n[1, 2') == "[1, 2"

    def test_plain_text_untouched(self):
        assert strip_code_fences("  [1]  ") == "[1]"


class TestRepairTruncatedJson:

    def test_drops_incomplete_trailing_element(self):
        text = json.dumps(GAPS)[:-30]
        repaired = repair_truncated_json(text)

        assert json.loads(repaired) == GAPS[:1]

    def test_nested_gaps_object(self):
        text = json.dumps({"gaps": GAPS})[:-30]
        repaired = repair_truncated_json(text)

        assert json.loads(repaired) == {"gaps": GAPS[:1]}

    def test_brackets_inside_strings_ignored(self):
        text = '[{"description": "uses [brackets] and {braces} inside text"}, {"descr'
        assert json.loads(repair_truncated_json(text)) == [
            {"description": "uses [brackets] and {braces} inside text"}
        ]

    def test_complete_document_returned_as_is(self):
        text = json.dumps(GAPS) + " trailing words"
        assert json.loads(repair_truncated_json(text)) == GAPS

    def test_nothing_complete(self):
        assert repair_truncated_json('[{"description": "half') is None
        assert repair_truncated_json("no json here") is None


class TestParseGapItems:

    def test_array(self):
        gaps = parse_gap_items(json.dumps(GAPS))

        assert [g.priority for g in gaps] == ["high", "medium"]
        assert all(g.source == "llm" and g.confidence == 0.75 for g in gaps)

    @pytest.mark.parametrize("key", ["gaps", "research_gaps", "researchGaps"])
    def test_wrapped_object(self, key):
        assert len(parse_gap_items(json.dumps({key: GAPS}))) == 2

    def test_invalid_items_dropped(self):
        items = [{"description": "too short"}, {"gap": "Alternative key for the gap description"}, 42]
        gaps = parse_gap_items(json.dumps(items))

        assert [g.description for g in gaps] == ["Alternative key for the gap description"]

    def test_unknown_priority_normalized(self):
        gaps = parse_gap_items(json.dumps([{"description": "A sufficiently long gap text", "priority": "URGENT"}]))
        assert gaps[0].priority == "medium"

    def test_prose_prefix_tolerated(self):
        assert len(parse_gap_items("Here are the gaps:\n" + json.dumps(GAPS))) == 2

    def test_not_json(self):
        with pytest.raises(MalformedLLMOutputError):
            parse_gap_items("no structured output at all")

    def test_broken_json(self):
        with pytest.raises(MalformedLLMOutputError, match="Invalid JSON"):
            parse_gap_items('[{"description": ')


class TestExtractGapsFromText:

    def test_numbered_list(self):
        raw = "Gaps:\n1. No study of long-term effects in patients\n2) Missing ablation of the attention module\n- tiny"
        gaps = extract_gaps_from_text(raw)

        assert [g.description for g in gaps] == [
            "No study of long-term effects in patients",
            "Missing ablation of the attention module",
        ]
        assert all(g.source == "llm_text" for g in gaps)

    def test_keyword_sentences(self):
        raw = "The paper is well written. There is a lack of external validation cohorts. Nice figures."
        gaps = extract_gaps_from_text(raw)

        assert [g.description for g in gaps] == ["There is a lack of external validation cohorts."]

    def test_nothing_found(self):
        assert extract_gaps_from_text("Great paper, well done.") == []


class TestDecodeWithRecovery:

    def test_clean_json(self):
        result = decode_with_recovery(json.dumps(GAPS))
        assert result.ok
        assert result.strategy == "json"

    def test_fenced_json(self):
        result = decode_with_recovery("```json\n" + json.dumps(GAPS) + "\n```")
        assert result.strategy == "json"
        assert len(result.gaps) == 2

    def test_truncated_json_repaired(self):
        result = decode_with_recovery(json.dumps(GAPS)[:-30], truncated=True)

        assert result.strategy == "repaired_json"
        assert [g.description for g in result.gaps] == [GAPS[0]["description"]]

    def test_truncated_without_flag_falls_to_text(self):
        raw = json.dumps(GAPS)[:-30]
        result = decode_with_recovery(raw, truncated=False)
        assert result.strategy in ("text", "none")

    def test_prose_response(self):
        result = decode_with_recovery("1. Evaluation across diverse hospital sites is missing")
        assert result.strategy == "text"
        assert result.error is not None

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty(self, raw):
        result = decode_with_recovery(raw)
        assert not result.ok
        assert result.strategy == "none"
        assert result.error == "Empty response"

    def test_empty_array(self):
        result = decode_with_recovery("[]")
        assert not result.ok
        assert result.error == "JSON contained no valid gap items"
