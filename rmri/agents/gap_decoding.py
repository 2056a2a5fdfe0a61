"""
Decoding of LLM gap-extraction responses.

``decode_with_recovery`` turns raw model output into ``ResearchGap`` items,
trying in order:

1. strip markdown code fences and parse the JSON
2. if the response was cut off at the token limit, repair the JSON by
   dropping the incomplete trailing element and closing open brackets
3. pull numbered/bulleted items, then gap-keyword sentences, from the text

When nothing yields a gap the result is empty and carries the error; the
caller decides on a rule-based fallback.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from rmri.core.errors import MalformedLLMOutputError
from rmri.models.micro import ResearchGap

VALID_PRIORITIES = ("high", "medium", "low")
MIN_GAP_LENGTH = 15
MAX_TEXT_GAPS = 10

GAP_KEYWORDS = (
    "gap", "lack", "missing", "unexplored", "limited", "future work",
    "further research", "not addressed", "open question", "remains unclear",
)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)(?:```|$)", re.DOTALL)
_LIST_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.+?)\s*$", re.MULTILINE)


@dataclass
class GapDecodeResult:
    """Outcome of decoding one response."""
    gaps: List[ResearchGap]
    strategy: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.gaps)


def strip_code_fences(raw: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = _FENCE_RE.search(raw)
    if match:
        return match.group(1).strip()
    return raw.strip()


def _json_start(text: str) -> Optional[int]:
    positions = [p for p in (text.find("["), text.find("{")) if p != -1]
    return min(positions) if positions else None


def repair_truncated_json(text: str) -> Optional[str]:
    """
    Close a JSON document that was cut off mid-stream.

    Keeps everything up to the last array element that closed cleanly and
    appends the brackets still open at that point. Returns None when no
    complete element exists.
    """
    start = _json_start(text)
    if start is None:
        return None
    text = text[start:]

    stack: List[str] = []
    in_string = False
    escape = False
    cut: Optional[int] = None
    cut_stack: List[str] = []

    for i, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "[{":
            stack.append(ch)
        elif ch in "]}":
            if not stack:
                break
            stack.pop()
            if not stack:
                return text[:i + 1]
            if stack[-1] == "[":
                cut = i + 1
                cut_stack = list(stack)

    if cut is None:
        return None
    closers = "".join("]" if c == "[" else "}" for c in reversed(cut_stack))
    return text[:cut] + closers


def _normalize_item(item: Any) -> Optional[ResearchGap]:
    if isinstance(item, str):
        item = {"description": item}
    if not isinstance(item, dict):
        return None

    description = item.get("description") or item.get("gap") or item.get("title")
    if not isinstance(description, str) or len(description.strip()) < MIN_GAP_LENGTH:
        return None

    priority = str(item.get("priority", "medium")).lower().strip()
    if priority not in VALID_PRIORITIES:
        priority = "medium"

    return ResearchGap(
        description=description.strip(),
        type=str(item.get("type") or "inferred"),
        priority=priority,
        rationale=str(item.get("rationale") or ""),
        confidence=0.75,
        source="llm",
    )


def parse_gap_items(text: str) -> List[ResearchGap]:
    """
    Parse a JSON array (or ``{"gaps": [...]}``) of gap objects.

    Raises:
        MalformedLLMOutputError: If the text is not JSON of a usable shape
    """
    start = _json_start(text)
    if start is None:
        raise MalformedLLMOutputError("No JSON found in response", raw=text)

    try:
        data, _ = json.JSONDecoder().raw_decode(text[start:])
    except json.JSONDecodeError as e:
        raise MalformedLLMOutputError(f"Invalid JSON: {e}", raw=text)

    if isinstance(data, dict):
        for key in ("gaps", "research_gaps", "researchGaps"):
            if isinstance(data.get(key), list):
                data = data[key]
                break
        else:
            data = [data]

    if not isinstance(data, list):
        raise MalformedLLMOutputError(f"Expected a list of gaps, got {type(data).__name__}", raw=text)

    return [gap for gap in (_normalize_item(item) for item in data) if gap is not None]


def extract_gaps_from_text(raw: str) -> List[ResearchGap]:
    """Salvage gaps from prose: list items first, then gap-keyword sentences."""
    def make(description: str) -> ResearchGap:
        return ResearchGap(
            description=description,
            type="inferred",
            priority="medium",
            rationale="Extracted from unstructured model output",
            confidence=0.6,
            source="llm_text",
        )

    items = []
    for match in _LIST_ITEM_RE.finditer(raw):
        text = re.sub(r"[*_`#]", "", match.group(1)).strip()
        if len(text) >= MIN_GAP_LENGTH and not text.startswith(("{", "[")):
            items.append(text)
    if items:
        return [make(text) for text in items[:MAX_TEXT_GAPS]]

    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+|\n+", raw)]
    hits = [
        s for s in sentences
        if len(s) >= MIN_GAP_LENGTH and any(kw in s.lower() for kw in GAP_KEYWORDS)
    ]
    return [make(s) for s in hits[:MAX_TEXT_GAPS]]


def decode_with_recovery(raw: Optional[str], truncated: bool = False) -> GapDecodeResult:
    """
    Decode a gap-extraction response, falling back step by step.

    Args:
        raw: Model output
        truncated: True if the model stopped at its token limit

    Returns:
        GapDecodeResult with strategy ``json``, ``repaired_json``, ``text``
        or ``none``
    """
    if not raw or not raw.strip():
        return GapDecodeResult(gaps=[], strategy="none", error="Empty response")

    body = strip_code_fences(raw)
    error: Optional[str] = None

    candidates = []
    if truncated:
        repaired = repair_truncated_json(body)
        if repaired is not None:
            candidates.append(("repaired_json", repaired))
    candidates.append(("json", body))

    for strategy, text in candidates:
        try:
            gaps = parse_gap_items(text)
        except MalformedLLMOutputError as e:
            error = str(e)
            continue
        if gaps:
            return GapDecodeResult(gaps=gaps, strategy=strategy)
        error = "JSON contained no valid gap items"

    gaps = extract_gaps_from_text(raw)
    if gaps:
        return GapDecodeResult(gaps=gaps, strategy="text", error=error)

    return GapDecodeResult(gaps=[], strategy="none", error=error or "No gaps found in response")
