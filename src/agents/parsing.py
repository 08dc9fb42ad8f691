"""Turn free-form model output into parsed JSON, repairing common defects.

The parser is an explicit state machine over one input string:

    STRIP_FENCES -> LOCATE -> CLEAN -> PARSE -> DONE
                                         |
                                         v
                                      REPAIR -> REPARSE -> DONE | FAILED

Every transition is a pure function exposed at module level so each step
can be exercised on its own.
"""
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from agents.errors import JSONRepairFailed, NoJSONStructure, ResponseParseError, excerpt

logger = logging.getLogger(__name__)

_CLOSERS = {"{": "}", "[": "]"}


class ParseState(str, Enum):
    STRIP_FENCES = "strip_fences"
    LOCATE = "locate"
    CLEAN = "clean"
    PARSE = "parse"
    REPAIR = "repair"
    REPARSE = "reparse"
    DONE = "done"
    FAILED = "failed"


def strip_code_fences(text: str) -> str:
    """Return the contents of the first Markdown code block, or the text itself.

    An opening fence without a closing one (truncated output) keeps
    everything after the opening fence.
    """
    lines = text.strip().split("\n")
    fence_lines = [i for i, line in enumerate(lines) if line.strip().startswith("```")]
    if not fence_lines:
        return text.strip()

    start = fence_lines[0]
    opening = lines[start].strip()
    # Single-line form: ```json {...} ```
    if opening.count("```") >= 2 and len(opening) > 6:
        inner = opening[3:opening.rfind("```")]
        return re.sub(r"^(json|JSON)\s*", "", inner).strip()

    end = fence_lines[1] if len(fence_lines) > 1 else len(lines)
    return "\n".join(lines[start + 1:end]).strip()


def locate_json(text: str) -> Optional[str]:
    """Slice from the first ``{``/``[`` to the last matching closer of the same kind.

    Returns the tail from the opener when no closer exists (truncated output),
    or None when the text has no opener at all.
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)
    end = text.rfind(_CLOSERS[text[start]])
    if end < start:
        return text[start:]
    return text[start:end + 1]


def _scan(text: str):
    """Yield (index, char, in_string) for every character, tracking JSON string state."""
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            yield i, ch, True
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        else:
            if ch == '"':
                in_string = True
                yield i, ch, True
            else:
                yield i, ch, False


def remove_trailing_commas(text: str) -> str:
    """Drop commas that directly precede ``}`` or ``]`` outside of strings."""
    out: List[str] = []
    for i, ch, in_string in _scan(text):
        if ch == "," and not in_string:
            rest = text[i + 1:].lstrip()
            if rest[:1] in ("}", "]"):
                continue
        out.append(ch)
    return "".join(out)


def count_unescaped_quotes(text: str) -> int:
    count = 0
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            count += 1
    return count


def close_unterminated_string(text: str) -> str:
    """Append a closing quote when the number of unescaped quotes is odd."""
    if count_unescaped_quotes(text) % 2 == 1:
        return text + '"'
    return text


def close_brackets(text: str) -> str:
    """Append closers for unbalanced ``{``/``[`` in LIFO order."""
    stack: List[str] = []
    for _, ch, in_string in _scan(text):
        if in_string:
            continue
        if ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in ("}", "]") and stack and stack[-1] == ch:
            stack.pop()
    return text + "".join(reversed(stack))


def repair_json(text: str) -> str:
    """Apply every repair step in order."""
    repaired = close_unterminated_string(text.rstrip())
    repaired = close_brackets(repaired)
    return remove_trailing_commas(repaired)


class ResponseParser:
    """Single-use state machine parsing one model response."""

    def __init__(self, text: str):
        self.raw = text
        self.state = ParseState.STRIP_FENCES
        self.trace: List[ParseState] = []
        self.candidate: str = text
        self.value: Any = None
        self.error: Optional[ResponseParseError] = None
        self._parse_error: Optional[json.JSONDecodeError] = None

    def run(self) -> Any:
        """Drive the machine to a terminal state.

        Returns:
            The parsed JSON value

        Raises:
            NoJSONStructure: If no ``{`` or ``[`` appears in the response
            JSONRepairFailed: If both the original and repaired text fail to parse
        """
        handlers = {
            ParseState.STRIP_FENCES: self._strip_fences,
            ParseState.LOCATE: self._locate,
            ParseState.CLEAN: self._clean,
            ParseState.PARSE: self._parse,
            ParseState.REPAIR: self._repair,
            ParseState.REPARSE: self._reparse,
        }
        while self.state not in (ParseState.DONE, ParseState.FAILED):
            self.trace.append(self.state)
            self.state = handlers[self.state]()
        self.trace.append(self.state)

        if self.state == ParseState.FAILED:
            raise self.error
        return self.value

    def _strip_fences(self) -> ParseState:
        self.candidate = strip_code_fences(self.raw)
        return ParseState.LOCATE

    def _locate(self) -> ParseState:
        located = locate_json(self.candidate)
        if located is None:
            self.error = NoJSONStructure("No JSON object or array found in response", self.raw)
            return ParseState.FAILED
        self.candidate = located
        return ParseState.CLEAN

    def _clean(self) -> ParseState:
        self.candidate = remove_trailing_commas(self.candidate)
        return ParseState.PARSE

    def _parse(self) -> ParseState:
        try:
            self.value = json.loads(self.candidate)
            return ParseState.DONE
        except json.JSONDecodeError as e:
            self._parse_error = e
            logger.warning(f"JSON parse failed ({e.msg} at pos {e.pos}), attempting repair")
            return ParseState.REPAIR

    def _repair(self) -> ParseState:
        self.candidate = repair_json(self.candidate)
        return ParseState.REPARSE

    def _reparse(self) -> ParseState:
        try:
            self.value = json.loads(self.candidate)
            logger.info("JSON repaired successfully")
            return ParseState.DONE
        except json.JSONDecodeError:
            original = self._parse_error
            logger.error(f"JSON parse error after repair: {original}")
            logger.debug(f"Offending response: {excerpt(self.raw)}")
            self.error = JSONRepairFailed(f"JSON parse error: {original}", self.raw, original)
            return ParseState.FAILED


def parse_model_response(text: str) -> Any:
    """Parse a model response into a JSON value, repairing it if needed."""
    return ResponseParser(text).run()


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse a model response that must contain a JSON object.

    A bare top-level array is wrapped as ``{"exercises": [...]}``.
    """
    value = parse_model_response(text)
    if isinstance(value, list):
        return {"exercises": value}
    if not isinstance(value, dict):
        raise NoJSONStructure(f"Expected a JSON object, got {type(value).__name__}", text)
    return value
