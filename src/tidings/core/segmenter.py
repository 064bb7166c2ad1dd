"""Split a page's recognized text into article segments and stitch cross-page continuations."""

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern

from dotenv import load_dotenv
from pydantic import BaseModel

from .recognition import RecognitionResult

load_dotenv()

logger = logging.getLogger(__name__)

JOIN_MARKER = "\n\n[페이지 연속]\n\n"

HEADER_PATTERN = re.compile(r"###\s*기사\s*\d*", re.IGNORECASE)
SEPARATOR_PATTERN = re.compile(r"\n---\n")
BRACKET_PATTERN = re.compile(r"\[기사\s*\d+\]", re.IGNORECASE)

# Delimiter conventions, highest priority first.
DELIMITER_PATTERNS: List[Pattern[str]] = [HEADER_PATTERN, SEPARATOR_PATTERN, BRACKET_PATTERN]

TITLE_PATTERN = re.compile(r"^[ \t]*제목[ \t]*:[ \t]*(.*)$", re.MULTILINE)
TYPE_PATTERN = re.compile(r"^[ \t]*유형[ \t]*:[ \t]*(.*)$", re.MULTILINE)
CONTENT_PATTERN = re.compile(r"^[ \t]*내용[ \t]*:[ \t]*", re.MULTILINE)

CONTINUED_ENDING = re.compile(r"(계속|→|다음\s*면에\s*계속)\s*\)?\s*$")
REPORTER_ENDING = re.compile(r"[가-힣]{2,4}\s*기자\s*$")
CONTINUED_OPENING = re.compile(r"^\s*\(?\s*\d*\s*(전면|앞면|면)에서\s*계속\s*\)?")


@dataclass
class SegmenterConfig:
    """Configuration for segmentation."""
    min_page_chars: int = 100
    merge_threshold: int = 200
    join_marker: str = JOIN_MARKER


def get_segmenter_config() -> SegmenterConfig:
    """Get segmenter configuration from environment."""
    return SegmenterConfig(
        min_page_chars=int(os.getenv("SEGMENT_MIN_PAGE_CHARS", "100")),
        merge_threshold=int(os.getenv("SEGMENT_MERGE_THRESHOLD", "200")),
    )


class SegmentDraft(BaseModel):
    """A segment recovered from one page, before metadata and chunking."""
    title: Optional[str] = None
    body: str
    type: Optional[str] = None
    author: Optional[str] = None
    continues_from_previous: bool = False
    continues_to_next: bool = False


def detect_delimiter(text: str) -> Optional[Pattern[str]]:
    for pattern in DELIMITER_PATTERNS:
        if pattern.search(text):
            return pattern
    return None


def split_segments(text: str, config: Optional[SegmenterConfig] = None) -> List[str]:
    """
    Split recognized page text into segment bodies.

    The first delimiter convention found (in priority order) is used. Text before
    the first header or bracket delimiter is folded into the first segment.
    Fragments shorter than ``config.merge_threshold`` are appended to the
    preceding segment.

    Args:
        text: Recognized text of one page
        config: Segmenter configuration (optional)

    Returns:
        Ordered segment bodies; empty when the page is below the minimum length
    """
    if config is None:
        config = SegmenterConfig()

    stripped = (text or "").strip()
    if len(stripped) < config.min_page_chars:
        return []

    pattern = detect_delimiter(stripped)
    if pattern is None:
        return [stripped]

    pieces = [piece.strip() for piece in pattern.split(stripped)]
    if pattern is SEPARATOR_PATTERN:
        # Separator lines sit between segments, so the leading piece is content too.
        fragments = [piece for piece in pieces if piece]
    else:
        preamble = pieces[0]
        fragments = [piece for piece in pieces[1:] if piece]
        if fragments and preamble:
            fragments[0] = f"{preamble}\n\n{fragments[0]}"

    if not fragments:
        return [stripped]

    merged: List[str] = []
    for fragment in fragments:
        if len(fragment) < config.merge_threshold and merged:
            merged[-1] += "\n\n" + fragment
        else:
            merged.append(fragment)

    return merged


def parse_segment_fields(body: str) -> SegmentDraft:
    """Pull the ``제목:``/``유형:``/``내용:`` fields out of one delimited segment."""
    title_match = TITLE_PATTERN.search(body)
    type_match = TYPE_PATTERN.search(body)
    content_match = CONTENT_PATTERN.search(body)

    if content_match:
        content = body[content_match.end():].strip()
    else:
        content = TYPE_PATTERN.sub("", TITLE_PATTERN.sub("", body, count=1), count=1).strip()

    title = title_match.group(1).strip() if title_match else None
    article_type = type_match.group(1).strip() if type_match else None

    return SegmentDraft(
        title=title or None,
        body=content or body.strip(),
        type=article_type or None,
    )


def segments_from_result(result: RecognitionResult, config: Optional[SegmenterConfig] = None) -> List[SegmentDraft]:
    """Build segments from a recognition result, branching on its tag."""
    if result.is_structured:
        segments = []
        for section in result.sections:
            if not section.content.strip():
                continue
            segments.append(SegmentDraft(
                title=(section.title or "").strip() or None,
                body=section.content.strip(),
                type=section.type,
                author=section.author,
            ))
        for ad in result.advertisements:
            if ad.content.strip():
                body = ad.content.strip()
                if ad.contact:
                    body = f"{body}\n{ad.contact}"
                segments.append(SegmentDraft(title=ad.title or None, body=body, type="광고"))
        return segments

    return [parse_segment_fields(body) for body in split_segments(result.text, config)]


def detect_article_ending(text: str) -> str:
    """Classify how a segment ends: ``reporter``, ``continued``, ``normal`` or ``unknown``."""
    trimmed = text.strip()
    if REPORTER_ENDING.search(trimmed):
        return "reporter"
    if CONTINUED_ENDING.search(trimmed):
        return "continued"
    if re.search(r"[.。]\s*$", trimmed):
        return "normal"
    return "unknown"


def has_manifest_continuation(previous: SegmentDraft, current: SegmentDraft, titles_expected: bool = True) -> bool:
    """
    Continuation visible in the text itself, without asking a model.

    An untitled opening segment only counts when the page's format carries titles;
    a page recognized as one undelimited block has no titles at all.
    """
    if detect_article_ending(previous.body) == "continued":
        return True
    if CONTINUED_OPENING.match(current.body):
        return True
    return titles_expected and not current.title


def merge_continuation(previous: SegmentDraft, current: SegmentDraft, join_marker: str = JOIN_MARKER) -> SegmentDraft:
    """Append a continuing segment's body to the segment it continues."""
    return previous.model_copy(update={
        "body": previous.body.rstrip() + join_marker + current.body.lstrip(),
        "continues_to_next": True,
    })


def stitch_pages(
    pages: List[List[SegmentDraft]],
    connected: List[bool],
    config: Optional[SegmenterConfig] = None,
) -> List[List[SegmentDraft]]:
    """
    Resolve cross-page continuations over an issue's pages.

    ``connected[i]`` says whether page ``i`` continues page ``i - 1`` (index 0 is
    ignored). When it does, the first segment of page ``i`` is merged into the last
    segment of the nearest earlier page that still has segments, and is removed from
    page ``i``.
    """
    if config is None:
        config = SegmenterConfig()

    stitched = [list(segments) for segments in pages]
    for index in range(1, len(stitched)):
        if not connected[index] or not stitched[index]:
            continue
        owner = next((i for i in range(index - 1, -1, -1) if stitched[i]), None)
        if owner is None:
            continue
        continuing = stitched[index].pop(0)
        stitched[owner][-1] = merge_continuation(stitched[owner][-1], continuing, config.join_marker)
        logger.info(f"Merged continuation from page {index + 1} into page {owner + 1}")

    return stitched
