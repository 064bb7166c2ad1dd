"""Deterministic repair of recognized text against a curated proper-noun dictionary.

Three passes run over the text:

1. Ordered pattern substitution (built-in slips first, then persisted corrections
   and place aliases), recording each applied change.
2. Name + position validation against the member roster. An exact match is left
   alone, a unique closest name within edit distance 2 is substituted, equally close
   candidates are reported but never chosen, and a name with no candidate is flagged
   as a suspected hallucination.
3. Implausible numbers (attendance >= 10,000, month > 12, day > 31) become warnings;
   the text itself is not altered.

Nothing here performs I/O; the dictionary snapshot is passed in.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple

from pydantic import BaseModel

from .cache import TTLCache, get_cache_config

logger = logging.getLogger(__name__)

HALLUCINATION_CATEGORY = "할루시네이션"
PLACE_CATEGORY = "장소"
NAME_CATEGORY = "이름"

POSITIONS = ["위임목사", "담임목사", "목사", "전도사", "장로", "권사", "안수집사", "집사"]

# A name token must start a word; it never begins inside the preceding word.
NAME_POSITION_PATTERN = re.compile(
    r"(?<![가-힣])([가-힣]{2,4})\s*(" + "|".join(POSITIONS) + r")"
)

# Tokens that directly precede a position word but are not personal names.
NON_NAME_TOKENS = {"원로", "협동", "은퇴", "부목", "교육", "선교", "담당", "시무", "명예"}

ATTENDANCE_PATTERN = re.compile(r"(\d[\d,]*)여?\s*(명|분|가정|가족)")
DATE_PATTERN = re.compile(r"(\d{4})년\s*(\d{1,2})월\s*(\d{1,2})일")

SUSPICIOUS_NAME_PREFIX = "의심스러운 이름: "
SUSPICIOUS_NUMBER_PREFIX = "의심스러운 숫자: "
ISSUE_WEIGHT = 50


@dataclass(frozen=True)
class CorrectionRule:
    """One substitution: regex ``pattern`` becomes ``replacement``."""
    pattern: Pattern[str]
    replacement: str
    category: str
    confidence: float = 1.0


def literal_rule(wrong: str, correct: str, category: str, confidence: float = 1.0) -> CorrectionRule:
    return CorrectionRule(re.compile(re.escape(wrong)), correct, category, confidence)


# Recognition slips seen repeatedly in the scanned newsletter.
STATIC_RULES: Tuple[CorrectionRule, ...] = (
    CorrectionRule(re.compile(r"월\s*한\s*시"), "열한시", "시간"),
    CorrectionRule(re.compile(r"월한세"), "열한시", "시간"),
    CorrectionRule(re.compile(r"열\s*한\s*시"), "열한시", "시간"),
    CorrectionRule(re.compile(r"한나홀"), "만나홀", PLACE_CATEGORY),
    CorrectionRule(re.compile(r"만나를"), "만나홀", PLACE_CATEGORY),
    CorrectionRule(re.compile(r"위원목사"), "위임목사", "직분"),
    CorrectionRule(re.compile(r"우임목사"), "위임목사", "직분"),
    CorrectionRule(re.compile(r"요즘형"), "요르단", "지명"),
)


@dataclass(frozen=True)
class RosterMember:
    name: str
    position: Optional[str] = None


@dataclass(frozen=True)
class DictionarySnapshot:
    """Immutable view of the correction dictionary at one point in time."""
    rules: Tuple[CorrectionRule, ...] = STATIC_RULES
    members: Tuple[RosterMember, ...] = ()
    hallucination_terms: Tuple[str, ...] = ()

    @property
    def member_names(self) -> List[str]:
        return sorted({m.name for m in self.members})


def build_snapshot(
    corrections: Optional[List[Dict[str, Any]]] = None,
    members: Optional[List[Dict[str, Any]]] = None,
    places: Optional[List[Dict[str, Any]]] = None,
) -> DictionarySnapshot:
    """
    Build a dictionary snapshot from persisted rows.

    Args:
        corrections: Rows with wrong_text, correct_text, category, confidence
        members: Rows with name and position
        places: Rows with name and aliases

    Returns:
        Snapshot with built-in rules first, then persisted corrections, then place aliases
    """
    rules: List[CorrectionRule] = list(STATIC_RULES)
    hallucination_terms: List[str] = []

    for row in corrections or []:
        wrong = row.get("wrong_text")
        if not wrong:
            continue
        category = row.get("category") or ""
        if category == HALLUCINATION_CATEGORY:
            hallucination_terms.append(wrong)
            continue
        correct = row.get("correct_text")
        if not correct or correct == wrong:
            continue
        rules.append(literal_rule(wrong, correct, category, float(row.get("confidence") or 1.0)))

    for row in places or []:
        name = row.get("name")
        for alias in row.get("aliases") or []:
            if name and alias and alias != name:
                rules.append(literal_rule(alias, name, PLACE_CATEGORY))

    roster = tuple(
        RosterMember(name=row["name"], position=row.get("position"))
        for row in members or []
        if row.get("name")
    )

    return DictionarySnapshot(
        rules=tuple(rules),
        members=roster,
        hallucination_terms=tuple(hallucination_terms),
    )


class AppliedCorrection(BaseModel):
    """A single change made to the text."""
    original: str
    corrected: str
    category: str


class CorrectionResult(BaseModel):
    """Output of the correction layer for one text."""
    corrected_text: str
    corrections: List[AppliedCorrection] = []
    warnings: List[str] = []
    hallucinations: List[str] = []
    confidence: float = 1.0

    @property
    def is_valid(self) -> bool:
        return not self.hallucinations and not self.warnings


def levenshtein_distance(s1: str, s2: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if not s1:
        return len(s2)
    if not s2:
        return len(s1)

    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            if c1 == c2:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j], current[j - 1], previous[j - 1]) + 1)
        previous = current
    return previous[-1]


def match_roster_name(name: str, roster_names: List[str], max_distance: int = 2) -> Tuple[str, List[str]]:
    """
    Classify a recognized name against the roster.

    Returns:
        ("exact", [name]), ("unique", [suggestion]), ("tie", [candidates...]) or ("none", [])
    """
    if name in roster_names:
        return "exact", [name]

    best_distance = None
    candidates: List[str] = []
    for known in roster_names:
        distance = levenshtein_distance(name, known)
        if distance > max_distance:
            continue
        if best_distance is None or distance < best_distance:
            best_distance = distance
            candidates = [known]
        elif distance == best_distance:
            candidates.append(known)

    if not candidates:
        return "none", []
    if len(candidates) > 1:
        return "tie", candidates
    return "unique", candidates


def covered_by(text: str, start: int, end: int, replacement: str) -> bool:
    """True when an occurrence of ``replacement`` in ``text`` spans ``text[start:end]``."""
    if end - start > len(replacement):
        return False
    first = max(0, end - len(replacement))
    for offset in range(first, start + 1):
        if text.startswith(replacement, offset):
            return True
    return False


def apply_rules(text: str, rules: Tuple[CorrectionRule, ...]) -> Tuple[str, List[AppliedCorrection]]:
    """Apply substitution rules in order, recording every changed match."""
    applied: List[AppliedCorrection] = []

    for rule in rules:
        def substitute(match: "re.Match[str]", rule: CorrectionRule = rule) -> str:
            # Text already carrying the replacement is left as is.
            if covered_by(match.string, match.start(), match.end(), rule.replacement):
                return match.group(0)
            applied.append(AppliedCorrection(
                original=match.group(0),
                corrected=rule.replacement,
                category=rule.category,
            ))
            return rule.replacement

        text = rule.pattern.sub(substitute, text)

    return text, applied


def validate_names(text: str, roster_names: List[str]) -> Tuple[str, List[AppliedCorrection], List[str], List[str]]:
    """Check every name + position mention against the roster."""
    corrections: List[AppliedCorrection] = []
    warnings: List[str] = []
    hallucinations: List[str] = []

    if not roster_names:
        return text, corrections, warnings, hallucinations

    def check(match: "re.Match[str]") -> str:
        name, position = match.group(1), match.group(2)
        if name in NON_NAME_TOKENS:
            return match.group(0)

        verdict, candidates = match_roster_name(name, roster_names)
        if verdict == "unique":
            corrections.append(AppliedCorrection(original=name, corrected=candidates[0], category=NAME_CATEGORY))
            return candidates[0] + match.group(0)[len(name):]
        if verdict == "tie":
            warning = f"{SUSPICIOUS_NAME_PREFIX}{name} (후보: {', '.join(candidates)})"
            if warning not in warnings:
                warnings.append(warning)
        elif verdict == "none":
            flag = f"{SUSPICIOUS_NAME_PREFIX}{name}"
            if flag not in hallucinations:
                hallucinations.append(flag)
        return match.group(0)

    text = NAME_POSITION_PATTERN.sub(check, text)
    return text, corrections, warnings, hallucinations


def find_suspicious_numbers(text: str) -> List[str]:
    """Return numerically implausible attendance counts and calendar dates."""
    suspicious: List[str] = []

    for match in ATTENDANCE_PATTERN.finditer(text):
        digits = match.group(1).replace(",", "")
        if digits.isdigit() and int(digits) >= 10000:
            suspicious.append(match.group(0))

    for match in DATE_PATTERN.finditer(text):
        month = int(match.group(2))
        day = int(match.group(3))
        if month > 12 or day > 31:
            suspicious.append(match.group(0))

    return suspicious


def compute_confidence(issue_count: int, text_length: int) -> float:
    if text_length <= 0:
        return 1.0 if issue_count == 0 else 0.0
    return max(0.0, min(1.0, 1 - (issue_count * ISSUE_WEIGHT) / text_length))


def correct_text(text: str, snapshot: Optional[DictionarySnapshot] = None) -> CorrectionResult:
    """
    Run all correction passes over one text.

    Args:
        text: Recognized text
        snapshot: Dictionary snapshot (built-in rules only when omitted)

    Returns:
        CorrectionResult with the corrected text and every finding
    """
    if snapshot is None:
        snapshot = DictionarySnapshot()

    corrected, corrections = apply_rules(text, snapshot.rules)

    hallucinations: List[str] = [term for term in snapshot.hallucination_terms if term in corrected]

    corrected, name_corrections, warnings, name_flags = validate_names(corrected, snapshot.member_names)
    corrections.extend(name_corrections)
    hallucinations.extend(name_flags)

    warnings.extend(f"{SUSPICIOUS_NUMBER_PREFIX}{value}" for value in find_suspicious_numbers(corrected))

    issue_count = len(corrections) + len(hallucinations) + len(warnings)
    return CorrectionResult(
        corrected_text=corrected,
        corrections=corrections,
        warnings=warnings,
        hallucinations=hallucinations,
        confidence=compute_confidence(issue_count, len(corrected)),
    )


class CorrectionDictionary:
    """TTL-cached dictionary snapshot fed by the store's roster/correction tables."""

    def __init__(
        self,
        loader: Callable[[], DictionarySnapshot],
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds is None:
            ttl_seconds = get_cache_config().dictionary_ttl
        self._cache: TTLCache[DictionarySnapshot] = TTLCache(loader, ttl_seconds, clock=clock, name="correction dictionary")

    @classmethod
    def from_store(cls, store: Any, **kwargs: Any) -> "CorrectionDictionary":
        def load() -> DictionarySnapshot:
            snapshot = build_snapshot(
                corrections=store.load_corrections(),
                members=store.load_members(),
                places=store.load_places(),
            )
            logger.info(
                f"Loaded correction dictionary: {len(snapshot.members)} members, "
                f"{len(snapshot.rules)} rules, {len(snapshot.hallucination_terms)} hallucination terms"
            )
            return snapshot

        return cls(load, **kwargs)

    @property
    def last_refreshed(self) -> Optional[float]:
        return self._cache.last_refreshed

    def snapshot(self) -> DictionarySnapshot:
        return self._cache.get()

    def refresh(self) -> DictionarySnapshot:
        return self._cache.refresh()


class CorrectionLayer:
    """Applies corrections using the current dictionary snapshot."""

    def __init__(self, dictionary: Optional[CorrectionDictionary] = None):
        self.dictionary = dictionary

    def correct(self, text: str) -> CorrectionResult:
        snapshot = self.dictionary.snapshot() if self.dictionary else None
        return correct_text(text, snapshot)
