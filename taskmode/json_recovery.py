"""
Recovering JSON parser for streamed task-mode reports.

The generator is asked for pure JSON but is not guaranteed to finish it:
large reports hit the output-length limit and get cut mid-structure, and
the text may carry markdown fences, prose or keep-alive padding. Recovery
is tiered, each tier tried only when the previous one failed:

    1. normalize      strip zero-width chars and keep-alive artifacts; drop
                      fences and 10+ whitespace runs outside string literals
    2. direct         json.loads on the normalized text
    3. extracted      first '{' .. last '}' (and a trailing error envelope)
    4. repaired       close an open string, drop a trailing comma, append
                      ']' for open '[' then '}' for open '{'
    5. reply only     pull "replyText" out with a pattern and return a
                      degraded document

Known limitation of tier 4: bracket *order* is not tracked. All missing
']' are appended before all missing '}', which matches typical generator
output (arrays of rows close before their sheet) but can produce text that
is invalid, or valid with a different nesting than intended, for unusual
truncation points. `strict=True` adds a stack-based attempt after the
heuristic one.

Nothing in this module raises past `recover_report`; every failure mode is
a returned value.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .observer import RequestObserver, ensure_observer


logger = logging.getLogger(__name__)

COULD_NOT_RECOVER = "Could not read the AI response. Please try again."
TRUNCATED_REPORT = (
    "The response was cut off before the report was complete; "
    "only the summary could be recovered."
)

_ZERO_WIDTH = dict.fromkeys(map(ord, "\u200b\u200c\u200d\u2060\ufeff"))
_KEEPALIVE = re.compile(r"<!--\s*KEEPALIVE\s*-->", re.IGNORECASE)
# A string literal (possibly unterminated), a markdown fence or a long whitespace run
_STRING_FENCE_OR_PADDING = re.compile(
    r'(?P<string>"[^"\\]*(?:\\.[^"\\]*)*"?)'
    r"|(?P<fence>```(?:json|JSON|Json)?)"
    r"|(?P<padding>\s{10,})"
)
_REPLY_FIELD = re.compile(r'"replyText"\s*:\s*"([^"\\]*(?:\\.[^"\\]*)*)')
# What the task endpoint appends when the upstream stream dies mid-body
_ERROR_ENVELOPE = '{"error":true'

_CLOSERS = {"{": "}", "[": "]"}


class RecoveryTier(str, Enum):
    """The tier that produced the result."""
    DIRECT = "direct"
    EXTRACTED = "extracted"
    REPAIRED = "repaired"
    REPLY_ONLY = "reply_only"
    FAILED = "failed"


@dataclass
class RecoveryResult:
    """Outcome of one recovery attempt."""
    document: Optional[Dict[str, Any]]
    tier: RecoveryTier
    raw_text: str = ""

    @property
    def recovered(self) -> bool:
        return self.document is not None

    @property
    def degraded(self) -> bool:
        return self.tier == RecoveryTier.REPLY_ONLY

    @property
    def error_message(self) -> Optional[str]:
        if self.document is None:
            return COULD_NOT_RECOVER
        if self.document.get("error"):
            return self.document.get("errorMessage") or COULD_NOT_RECOVER
        return None


def normalize_text(text: str) -> str:
    """Tier 1: remove everything that is never part of the JSON payload."""
    text = text.translate(_ZERO_WIDTH)
    text = _KEEPALIVE.sub("", text)

    def _keep_strings(match):
        return match.group("string") if match.group("string") is not None else ""

    text = _STRING_FENCE_OR_PADDING.sub(_keep_strings, text)
    return text.strip()


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    """json.loads, but only a JSON object counts and errors become None."""
    if not text:
        return None
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def _extraction_candidates(text: str) -> List[str]:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return []
    candidates = [text[first:last + 1]]
    envelope = text.rfind(_ERROR_ENVELOPE)
    if envelope > first:
        candidates.append(text[envelope:last + 1])
    return candidates


def repair_structure(text: str) -> str:
    """Tier 4 heuristic: close what the truncation left open.

    Tracks string state (a backslash escapes the next character) and running
    counts of unmatched braces and brackets outside strings. Missing ']' are
    appended before missing '}' regardless of the order they were opened in.
    """
    in_string = False
    escaped = False
    braces = 0
    brackets = 0

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            braces += 1
        elif ch == "}":
            braces -= 1
        elif ch == "[":
            brackets += 1
        elif ch == "]":
            brackets -= 1

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]  # half an escape sequence
        repaired += '"'
    repaired = repaired.rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1]
    return repaired + "]" * max(brackets, 0) + "}" * max(braces, 0)


def repair_structure_strict(text: str) -> str:
    """Stack-based variant of repair_structure: closers follow opening order."""
    in_string = False
    escaped = False
    stack: List[str] = []

    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in ("}", "]") and stack and _CLOSERS[stack[-1]] == ch:
            stack.pop()

    repaired = text
    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    repaired = repaired.rstrip()
    if repaired.endswith(","):
        repaired = repaired[:-1]
    elif repaired.endswith(":"):
        repaired += "null"
    return repaired + "".join(_CLOSERS[opener] for opener in reversed(stack))


def extract_reply_fragment(text: str) -> Optional[str]:
    """Tier 5 pattern: the (possibly unterminated) replyText value, decoded."""
    match = _REPLY_FIELD.search(text)
    if not match:
        return None
    raw = match.group(1)
    try:
        value = json.loads('"' + raw + '"', strict=False)
    except ValueError:
        # partial \uXXXX escape at the cut point
        value = raw.replace("\\n", "\n").replace('\\"', '"').replace("\\\\", "\\")
    return value if value.strip() else None


def degraded_document(reply_text: str, message: str = TRUNCATED_REPORT) -> Dict[str, Any]:
    return {
        "replyText": reply_text,
        "sheets": [],
        "highlights": [],
        "error": True,
        "errorMessage": message,
    }


def _has_content(document: Dict[str, Any]) -> bool:
    """A repaired object must carry something; a bare '{}' is not a recovery."""
    for value in document.values():
        if value is None or value is False:
            continue
        if isinstance(value, (str, list, dict)) and not value:
            continue
        return True
    return False


def recover_report(
    text: Optional[str],
    observer: Optional[RequestObserver] = None,
    strict: bool = False,
) -> RecoveryResult:
    """Best-effort ReportDocument from a complete (possibly broken) response text."""
    obs = ensure_observer(observer, "recovery")

    if not isinstance(text, str) or not text.strip():
        obs.warn("PARSE_EMPTY", "Nothing to parse")
        return RecoveryResult(None, RecoveryTier.FAILED, text if isinstance(text, str) else "")

    normalized = normalize_text(text)
    obs.debug("PARSE_NORMALIZED", "Normalized response text", {
        "original_length": len(text),
        "normalized_length": len(normalized),
    })

    document = _loads_object(normalized)
    if document is not None:
        obs.log("PARSE_DIRECT", "Parsed response directly")
        return RecoveryResult(document, RecoveryTier.DIRECT, text)

    for candidate in _extraction_candidates(normalized):
        document = _loads_object(candidate)
        if document is not None:
            obs.log("PARSE_EXTRACTED", "Parsed JSON object extracted from surrounding text", {
                "discarded_chars": len(normalized) - len(candidate),
            })
            return RecoveryResult(document, RecoveryTier.EXTRACTED, text)

    first = normalized.find("{")
    if first != -1:
        body = normalized[first:]
        attempts = [("heuristic", repair_structure)]
        if strict:
            attempts.append(("stack", repair_structure_strict))
        for name, repair in attempts:
            document = _loads_object(repair(body))
            if document is not None and _has_content(document):
                obs.warn("PARSE_REPAIRED", "Response was truncated; closed open structures", {
                    "strategy": name,
                    "tail": body[-120:],
                })
                return RecoveryResult(document, RecoveryTier.REPAIRED, text)

    fragment = extract_reply_fragment(normalized)
    if fragment is not None:
        obs.warn("PARSE_REPLY_ONLY", "Structural parsing failed; recovered reply text only", {
            "reply_length": len(fragment),
        })
        return RecoveryResult(degraded_document(fragment), RecoveryTier.REPLY_ONLY, text)

    obs.error("PARSE_FAILED", COULD_NOT_RECOVER, text[:500])
    return RecoveryResult(None, RecoveryTier.FAILED, text)


def robust_json_parse(text: Optional[str], observer: Optional[RequestObserver] = None, strict: bool = False) -> Optional[Dict[str, Any]]:
    """The recovered document alone (dict, degraded dict, or None)."""
    return recover_report(text, observer=observer, strict=strict).document
