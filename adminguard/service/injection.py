"""Heuristic injection signature scanner.

The scanner only annotates. It walks every string leaf and every object
key of a decoded JSON value and reports each signature category that
matches. Blocking is left to schema validation, which rejects the
structural attacks (operator-shaped objects in place of strings, extra
keys) these signatures most often travel in.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, List

MAX_SCAN_DEPTH = 20
MAX_MATCH_LENGTH = 64


class PatternCategory(str, Enum):
    SQL_KEYWORD = "sql_keyword"
    TAUTOLOGY = "tautology"
    QUERY_OPERATOR = "query_operator"
    SCRIPT_TAG = "script_tag"
    SCRIPT_PROTOCOL = "script_protocol"
    EVENT_HANDLER = "event_handler"
    SHELL_METACHAR = "shell_metachar"
    PATH_TRAVERSAL = "path_traversal"


@dataclass(frozen=True)
class DetectionFinding:
    field: str
    category: PatternCategory
    matched_text: str


_SIGNATURES: dict[PatternCategory, List[re.Pattern]] = {
    PatternCategory.SQL_KEYWORD: [
        re.compile(r"\bunion\s+(?:all\s+)?select\b", re.IGNORECASE),
        re.compile(r"\bselect\b.+\bfrom\b", re.IGNORECASE | re.DOTALL),
        re.compile(r"\binsert\s+into\b", re.IGNORECASE),
        re.compile(r"\bupdate\s+\w+\s+set\b", re.IGNORECASE),
        re.compile(r"\bdelete\s+from\b", re.IGNORECASE),
        re.compile(r"\b(?:drop|alter|truncate)\s+(?:table|database|schema)\b", re.IGNORECASE),
        re.compile(r"\bexec(?:ute)?\s*\(", re.IGNORECASE),
        # Comment markers only count right after a quote, paren, semicolon or number
        re.compile(r"(?:['\");]|\b\d+)\s*(?:--|#)"),
        re.compile(r"/\*.*?\*/", re.DOTALL),
        re.compile(r"\b(?:sleep|benchmark|pg_sleep)\s*\(|\bwaitfor\s+delay\b", re.IGNORECASE),
    ],
    PatternCategory.TAUTOLOGY: [
        re.compile(
            r"\b(?:or|and)\b\s+(['\"]?)(\w+)\1\s*=\s*(['\"]?)\2\3",
            re.IGNORECASE,
        ),
        re.compile(r"['\"]\s*(?:or|and)\s+['\"]?\w+['\"]?\s*(?:=|like)\s*['\"]?\w+", re.IGNORECASE),
        re.compile(r"\bor\s+(?:true|1)\b\s*(?:--|#|$)", re.IGNORECASE),
    ],
    PatternCategory.QUERY_OPERATOR: [
        re.compile(
            r"\$(?:where|ne|eq|gt|gte|lt|lte|in|nin|regex|exists|expr|or|and|not|nor|elemMatch|function|accumulator)\b"
        ),
        re.compile(r"^\$[A-Za-z]+$"),
    ],
    PatternCategory.SCRIPT_TAG: [
        re.compile(
            r"<\s*/?\s*(?:script|iframe|object|embed|svg|img|style|link|meta|base|form|body)\b",
            re.IGNORECASE,
        ),
    ],
    PatternCategory.SCRIPT_PROTOCOL: [
        re.compile(r"\b(?:javascript|vbscript|livescript)\s*:", re.IGNORECASE),
        re.compile(r"\bdata\s*:\s*text/html", re.IGNORECASE),
    ],
    PatternCategory.EVENT_HANDLER: [
        re.compile(r"\bon[a-z]{3,}\s*=", re.IGNORECASE),
    ],
    PatternCategory.SHELL_METACHAR: [
        re.compile(r"[;&|`]"),
        re.compile(r"\$\(|\$\{"),
        re.compile(r"[<>]\s*/"),
    ],
    PatternCategory.PATH_TRAVERSAL: [
        re.compile(r"\.\.[/\\]"),
        re.compile(r"%2e%2e(?:%2f|%5c|/|\\)", re.IGNORECASE),
        re.compile(r"\.\.%(?:2f|5c)", re.IGNORECASE),
    ],
}


def _clip(text: str) -> str:
    if len(text) <= MAX_MATCH_LENGTH:
        return text
    return text[: MAX_MATCH_LENGTH - 3] + "..."


def _scan_text(text: str, field: str) -> List[DetectionFinding]:
    findings: List[DetectionFinding] = []
    for category, patterns in _SIGNATURES.items():
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                findings.append(
                    DetectionFinding(field=field, category=category, matched_text=_clip(match.group(0)))
                )
                # One finding per category per string
                break
    return findings


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _walk(value: Any, path: str, depth: int, findings: List[DetectionFinding]) -> None:
    if depth > MAX_SCAN_DEPTH:
        return
    if isinstance(value, str):
        findings.extend(_scan_text(value, path or "$"))
    elif isinstance(value, dict):
        for key, item in value.items():
            key_text = str(key)
            child = _join(path, key_text)
            findings.extend(_scan_text(key_text, child))
            _walk(item, child, depth + 1, findings)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _walk(item, f"{path}[{index}]", depth + 1, findings)


class InjectionDetector:
    """Stateless scanner; ``scan`` never raises."""

    def scan(self, value: Any) -> List[DetectionFinding]:
        findings: List[DetectionFinding] = []
        _walk(value, "", 0, findings)
        return findings


__all__ = ["PatternCategory", "DetectionFinding", "InjectionDetector"]
