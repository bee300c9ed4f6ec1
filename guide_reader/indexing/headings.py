"""
Heading detection for plain-text guides.

`score_heading` is a pure function of a line and its immediate neighbors. The
parser feeds every line through a `HeadingScanner`, which keeps a three-line
neighborhood and records lines whose confidence reaches the configured
threshold. Tuning the weights or the threshold never touches parse control flow.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .models import ParsedSection, SectionMarker, SectionNode

KEYWORD_RE = re.compile(
    r"^(?:section|chapter|part|act|stage|level|world|area|mission|episode)\s+"
    r"(\d+(?:\.\d+)*|[ivxlcdm]+)\b",
    re.IGNORECASE,
)
NUMBER_RE = re.compile(r"^(\d+(?:\.\d+)*)[.)]?\s+\S")
TAG_RE = re.compile(r"\[[A-Za-z0-9.]{2,10}\]")
LEADER_RE = re.compile(r"\.{4,}")


@dataclass(frozen=True)
class HeadingConfig:
    threshold: float = 0.5
    max_heading_length: int = 60
    min_rule_length: int = 4
    rule_chars: str = "-=*~#_+"
    min_caps_letters: int = 3
    max_level: int = 4
    caps_weight: float = 0.35
    framed_weight: float = 0.45
    underline_weight: float = 0.25
    keyword_weight: float = 0.45
    number_weight: float = 0.25
    tag_weight: float = 0.2
    blank_weight: float = 0.1
    leader_penalty: float = 0.4


DEFAULT_HEADING_CONFIG = HeadingConfig()


def is_rule(line: Optional[str], config: HeadingConfig = DEFAULT_HEADING_CONFIG) -> bool:
    """
    True for separator lines such as `=====` or `- - - -`.
    """
    if line is None:
        return False
    compact = line.strip().replace(" ", "")
    return len(compact) >= config.min_rule_length and set(compact) <= set(config.rule_chars)


def _is_blank(line: Optional[str]) -> bool:
    # Document edges count as blank neighbors.
    return line is None or not line.strip()


def score_heading(
    line: Optional[str],
    prev_line: Optional[str] = None,
    next_line: Optional[str] = None,
    config: HeadingConfig = DEFAULT_HEADING_CONFIG,
) -> float:
    """
    Confidence in [0, 1] that `line` is a section heading.
    """
    if line is None:
        return 0.0
    text = line.strip()
    if not text or len(text) > config.max_heading_length or is_rule(text, config):
        return 0.0

    score = 0.0
    letters = [ch for ch in text if ch.isalpha()]
    if len(letters) >= config.min_caps_letters and all(ch.isupper() for ch in letters):
        score += config.caps_weight

    prev_rule = is_rule(prev_line, config)
    next_rule = is_rule(next_line, config)
    if prev_rule and next_rule:
        score += config.framed_weight
    elif prev_rule or next_rule:
        score += config.underline_weight

    if KEYWORD_RE.match(text):
        score += config.keyword_weight
    elif NUMBER_RE.match(text):
        score += config.number_weight

    if TAG_RE.search(text):
        score += config.tag_weight
    if _is_blank(prev_line) and _is_blank(next_line):
        score += config.blank_weight
    # Table-of-contents entries use dot leaders; the heading itself does not.
    if LEADER_RE.search(text):
        score -= config.leader_penalty

    return round(min(max(score, 0.0), 1.0), 4)


def _numbering_depth(text: str) -> int:
    match = KEYWORD_RE.match(text)
    if match:
        number = match.group(1)
        return number.count(".") + 1 if number[0].isdigit() else 1
    match = NUMBER_RE.match(text)
    if match:
        return match.group(1).count(".") + 1
    return 0


def infer_level(
    line: str,
    prev_line: Optional[str] = None,
    next_line: Optional[str] = None,
    config: HeadingConfig = DEFAULT_HEADING_CONFIG,
) -> int:
    """
    Heading level, 1 being outermost. Dotted numbering wins over framing;
    `=` rules frame top-level headings, other rules second-level ones.
    """
    depth = _numbering_depth(line.strip())
    if depth:
        return min(depth, config.max_level)
    rules = [neighbor.strip() for neighbor in (prev_line, next_line) if is_rule(neighbor, config)]
    if any("=" in rule for rule in rules):
        return 1
    if rules:
        return 2
    return min(3, config.max_level)


class HeadingScanner:
    """
    Streaming wrapper around `score_heading`. Lines are fed in order; each line
    is scored once its successor is known (or at `finish`).
    """

    def __init__(self, config: HeadingConfig = DEFAULT_HEADING_CONFIG):
        self.config = config
        self.sections: List[ParsedSection] = []
        self._previous: Optional[Tuple[int, str]] = None
        self._current: Optional[Tuple[int, str]] = None

    def feed(self, line_number: int, text: str) -> None:
        if self._current is not None:
            self._evaluate(self._previous, self._current, text)
        self._previous, self._current = self._current, (line_number, text)

    def finish(self) -> List[ParsedSection]:
        if self._current is not None:
            self._evaluate(self._previous, self._current, None)
            self._previous, self._current = None, None
        return self.sections

    def _evaluate(self, previous: Optional[Tuple[int, str]], current: Tuple[int, str], next_text: Optional[str]) -> None:
        line_number, text = current
        prev_text = previous[1] if previous else None
        confidence = score_heading(text, prev_text, next_text, self.config)
        if confidence < self.config.threshold:
            return
        self.sections.append(
            ParsedSection(
                line_number=line_number,
                title=text.strip(),
                level=infer_level(text, prev_text, next_text, self.config),
                confidence=confidence,
            )
        )


def build_section_tree(markers: Iterable[SectionMarker]) -> List[SectionNode]:
    """
    Nest markers by level: a marker's parent is the nearest preceding marker
    with a strictly lower level.
    """
    roots: List[SectionNode] = []
    stack: List[SectionNode] = []
    for marker in sorted(markers, key=lambda m: m.line_number):
        node = SectionNode(marker=marker)
        while stack and stack[-1].level >= node.level:
            stack.pop()
        if stack:
            stack[-1].children.append(node)
        else:
            roots.append(node)
        stack.append(node)
    return roots
