"""
Tool-call extraction from completion output.

Models do not reliably use the structured tool channel. Three encodings are
recognized, tried in priority order:

1. Native structured calls (name + JSON arguments string).
2. Tag-like pseudo-syntax written into the text, e.g.
   <function=add_task>{"title": "Draft SOP"}</function>
   <tool_call>{"name": "add_task", "arguments": {...}}</tool_call>
3. Bare fragments such as  add_task {"title": "Draft SOP"}  for registry names.

Whatever path yields the calls, the pseudo-call text is removed from the
reply shown to the user (`strip_pseudo_calls`, `StreamingTextFilter`).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import json
import logging
import re

logger = logging.getLogger(__name__)

SOURCE_STRUCTURED = "structured"
SOURCE_RECOVERED = "recovered"
SOURCE_TEXT = "text"

# <function=name ...>, <function name="name">, <function:name
_FUNCTION_TAG = re.compile(r"<\s*function(?:\s+name)?\s*[=:]\s*[\"']?(?P<name>[A-Za-z_]\w*)[\"']?")
# <tool_call>, <function_call>, <function>, <tool> wrappers whose body names the call
_WRAPPER_TAG = re.compile(r"<\s*(?:tool_call|function_call|function|tool)\s*>")
_CLOSING_TAG = re.compile(r"</\s*[A-Za-z_]*\s*>")
_TAIL = re.compile(r"\s*\)?\s*>?\s*")
_STRAY_TAG = re.compile(r"</?\s*(?:tool_call|function_call|function|tool)\b[^>\n]*>")
_BRACE_GAP = re.compile(r"[\s>,(=:]*")
_PAIR = re.compile(
    r"""(?P<q>["'])(?P<key>[A-Za-z_]\w*)(?P=q)\s*:\s*"""
    r"""(?P<value>"(?:[^"\\]|\\.)*"?|'(?:[^'\\]|\\.)*'?|\[[^\]]*\]?|-?\d+(?:\.\d+)?k?|true|false|null)"""
)


@dataclass
class ExtractedCall:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    source: str = SOURCE_STRUCTURED


# ========================================
# LOW-LEVEL PARSING
# ========================================

def find_matching_brace(text: str, start: int) -> Optional[int]:
    """
    Index of the brace closing the one at `start`, skipping braces inside
    double-quoted strings. None when the object is unterminated.
    """
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
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
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _decode_value(raw: str) -> Any:
    if raw.startswith('"'):
        try:
            return json.loads(raw)
        except ValueError:
            return raw.strip('"')
    if raw.startswith("'"):
        return raw.strip("'")
    if raw.startswith("["):
        try:
            return json.loads(raw)
        except ValueError:
            return [item.strip().strip("\"'") for item in raw.strip("[]").split(",") if item.strip()]
    if raw in ("true", "false"):
        return raw == "true"
    if raw == "null":
        return None
    # Numbers stay strings; the normalizer owns numeric coercion
    return raw


def scrape_key_values(text: str) -> Dict[str, Any]:
    """Best-effort recovery of "key": value pairs from broken JSON."""
    result: Dict[str, Any] = {}
    for match in _PAIR.finditer(text or ""):
        key = match.group("key")
        if key not in result:
            result[key] = _decode_value(match.group("value"))
    return result


def parse_arguments(raw: Any) -> Tuple[Dict[str, Any], bool]:
    """
    Parse an arguments payload: strict JSON first, then the lenient scraper.

    Returns:
        (arguments, strict) - strict is False when the scraper was needed
    """
    if raw is None or raw == "":
        return {}, True
    if isinstance(raw, dict):
        return dict(raw), True
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return scrape_key_values(str(raw)), False
    if isinstance(parsed, str):
        # Double-encoded arguments
        return parse_arguments(parsed)
    if isinstance(parsed, dict):
        return parsed, True
    return {}, False


def _unwrap(payload: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
    """Split a {"name": ..., "arguments": {...}} wrapper into its parts."""
    if isinstance(payload.get("function"), dict):
        payload = payload["function"]
    name = payload.get("name") or payload.get("tool")
    if not isinstance(name, str) or not name.strip():
        return None, payload
    for key in ("arguments", "parameters", "args"):
        if key in payload:
            args, _ = parse_arguments(payload[key])
            return name.strip(), args
    rest = {k: v for k, v in payload.items() if k not in ("name", "tool")}
    return name.strip(), rest


# ========================================
# CHANNEL 1: STRUCTURED CALLS
# ========================================

def _field(call: Any, name: str) -> Any:
    if isinstance(call, dict):
        return call.get(name)
    return getattr(call, name, None)


def from_structured(tool_calls: Iterable[Any]) -> List[ExtractedCall]:
    """
    Normalize native tool calls. A call whose JSON is broken falls back to
    the scraper; it never prevents the other calls from being extracted.
    """
    calls: List[ExtractedCall] = []
    for call in tool_calls or []:
        name = _field(call, "name")
        if not name and isinstance(_field(call, "function"), dict):
            name, args = _unwrap(_field(call, "function"))
        else:
            args, strict = parse_arguments(_field(call, "arguments"))
            if not strict:
                logger.warning(f"[EXTRACT] Malformed JSON arguments for {name}, recovered keys: {list(args)}")
        if not name:
            logger.warning("[EXTRACT] Skipping structured call without a name")
            continue
        calls.append(ExtractedCall(name=str(name).strip(), arguments=args, source=SOURCE_STRUCTURED))
    return calls


# ========================================
# CHANNEL 2: TAG-LIKE PSEUDO SYNTAX
# ========================================

def _scan_body(text: str, pos: int) -> Tuple[Optional[str], int]:
    """
    Locate the JSON-ish body starting near `pos`.

    Returns:
        (body or None, end index of the consumed span)
    """
    gap = _BRACE_GAP.match(text, pos)
    brace = gap.end()
    if brace >= len(text) or text[brace] != "{":
        return None, pos
    close = find_matching_brace(text, brace)
    if close is None:
        return text[brace:], len(text)
    return text[brace:close + 1], close + 1


def _consume_closing(text: str, pos: int) -> int:
    tail = _TAIL.match(text, pos)
    closing = _CLOSING_TAG.match(text, tail.end())
    if closing:
        return closing.end()
    # Only swallow the tail when it holds more than whitespace
    return tail.end() if text[pos:tail.end()].strip() else pos


def _pseudo_spans(text: str, names: Sequence[str]) -> List[Tuple[int, int, Optional[ExtractedCall]]]:
    spans: List[Tuple[int, int, Optional[ExtractedCall]]] = []
    patterns = [_FUNCTION_TAG, _WRAPPER_TAG]
    if names:
        patterns.append(re.compile(r"<\s*(?P<name>" + "|".join(re.escape(n) for n in names) + r")\s*>"))

    for pattern in patterns:
        for match in pattern.finditer(text):
            if any(start <= match.start() < end for start, end, _ in spans):
                continue
            tag_name = match.groupdict().get("name")
            body, body_end = _scan_body(text, match.end())
            end = _consume_closing(text, body_end if body is not None else match.end())

            call = None
            if body is None:
                # Tag without a body; only meaningful when it names the call
                if tag_name:
                    call = ExtractedCall(name=tag_name, arguments={}, source=SOURCE_RECOVERED)
                spans.append((match.start(), end, call))
                continue

            args, strict = parse_arguments(body)
            name = tag_name
            if name is None or (args.get("name") == name and any(k in args for k in ("arguments", "parameters"))):
                name, args = _unwrap(args)
            if not strict:
                logger.warning(f"[EXTRACT] Lenient parse of pseudo call {name}: {list(args)}")
            if name:
                call = ExtractedCall(name=name, arguments=args, source=SOURCE_RECOVERED)
            spans.append((match.start(), end, call))

    spans.sort(key=lambda span: span[0])
    return spans


def from_pseudo_syntax(text: str, names: Sequence[str] = ()) -> List[ExtractedCall]:
    return [call for _, _, call in _pseudo_spans(text or "", names) if call]


# ========================================
# CHANNEL 3: BARE name{...} FRAGMENTS
# ========================================

def _bare_spans(text: str, names: Sequence[str]) -> List[Tuple[int, int, Optional[ExtractedCall]]]:
    if not names:
        return []
    pattern = re.compile(r"`{0,3}\b(?P<name>" + "|".join(re.escape(n) for n in names) + r")\b\s*\(?\s*(?=\{|\Z)")
    spans: List[Tuple[int, int, Optional[ExtractedCall]]] = []
    for match in pattern.finditer(text):
        brace = match.end()
        if brace >= len(text):
            # Name at the very end of the text; a body may still be streaming in
            spans.append((match.start(), len(text), None))
            continue
        close = find_matching_brace(text, brace)
        if close is None:
            spans.append((match.start(), len(text), None))
            continue
        end = re.compile(r"\s*\)?`{0,3}").match(text, close + 1).end()
        call = None
        try:
            args = json.loads(text[brace:close + 1])
            if isinstance(args, dict):
                call = ExtractedCall(name=match.group("name"), arguments=args, source=SOURCE_TEXT)
        except ValueError:
            logger.warning(f"[EXTRACT] Ignoring bare {match.group('name')} fragment with invalid JSON")
        spans.append((match.start(), end, call))
    return spans


def from_bare_text(text: str, names: Sequence[str]) -> List[ExtractedCall]:
    return [call for _, _, call in _bare_spans(text or "", names) if call]


# ========================================
# PUBLIC ENTRY POINTS
# ========================================

def extract(text: Optional[str], tool_calls: Optional[Iterable[Any]], names: Sequence[str]) -> Tuple[List[ExtractedCall], Optional[str]]:
    """
    Normalize a completion into an ordered list of calls.

    Returns:
        (calls, source) - source names the channel that produced the calls
    """
    calls = from_structured(tool_calls or [])
    if calls:
        return calls, SOURCE_STRUCTURED

    calls = from_pseudo_syntax(text or "", names)
    if calls:
        return calls, SOURCE_RECOVERED

    calls = from_bare_text(text or "", names)
    if calls:
        return calls, SOURCE_TEXT

    return [], None


def recover_failed_generation(raw: Optional[str], names: Sequence[str]) -> List[ExtractedCall]:
    """Recover intended calls from a rejected structured generation."""
    if not raw:
        return []

    calls = from_pseudo_syntax(raw, names) or from_bare_text(raw, names)
    if calls:
        return calls

    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None
    items = payload if isinstance(payload, list) else [payload] if isinstance(payload, dict) else []
    recovered = []
    for item in items:
        if isinstance(item, dict):
            name, args = _unwrap(item)
            if name:
                recovered.append(ExtractedCall(name=name, arguments=args, source=SOURCE_RECOVERED))
    return recovered


def _all_spans(text: str, names: Sequence[str]) -> List[Tuple[int, int]]:
    spans = [(start, end) for start, end, _ in _pseudo_spans(text, names)]
    for start, end, _ in _bare_spans(text, names):
        if not any(s <= start < e for s, e in spans):
            spans.append((start, end))
    spans.sort()
    return spans


def strip_pseudo_calls(text: Optional[str], names: Sequence[str], tidy: bool = True) -> str:
    """Remove every recognized pseudo-call span from user-visible text."""
    if not text:
        return ""
    pieces = []
    cursor = 0
    for start, end in _all_spans(text, names):
        if start < cursor:
            continue
        pieces.append(text[cursor:start])
        cursor = end
    pieces.append(text[cursor:])
    cleaned = "".join(pieces)

    if not tidy:
        return cleaned
    cleaned = _STRAY_TAG.sub("", cleaned)
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


class StreamingTextFilter:
    """
    Incremental version of `strip_pseudo_calls` for streamed replies.

    A tail of the buffer is held back until it can no longer be the start
    of a pseudo call, so call syntax never reaches the client.
    """

    def __init__(self, names: Sequence[str], holdback: Optional[int] = None):
        self._names = list(names)
        self._raw = ""
        self._emitted = 0
        longest = max([len(n) for n in self._names] + [len("<function_call")])
        self._holdback = holdback if holdback is not None else longest + 16

    @property
    def raw(self) -> str:
        return self._raw

    @property
    def text(self) -> str:
        return strip_pseudo_calls(self._raw, self._names)

    def feed(self, delta: str) -> str:
        """Add model text; return the portion that is safe to show now."""
        if not delta:
            return ""
        self._raw += delta
        cleaned = strip_pseudo_calls(self._raw, self._names, tidy=False)
        safe_end = len(cleaned) - self._holdback
        if safe_end <= self._emitted:
            return ""
        chunk = cleaned[self._emitted:safe_end]
        self._emitted = safe_end
        return chunk

    def flush(self) -> str:
        """Return whatever is left once the model has finished."""
        cleaned = strip_pseudo_calls(self._raw, self._names, tidy=False)
        if len(cleaned) <= self._emitted:
            return ""
        chunk = cleaned[self._emitted:]
        self._emitted = len(cleaned)
        return _STRAY_TAG.sub("", chunk).rstrip()
