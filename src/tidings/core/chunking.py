"""Sentence-aware, overlapping fixed-size chunking of segment bodies.

No network access; everything here is deterministic so chunk counts stay stable
across re-runs of the same issue.
"""

import os
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

from dotenv import load_dotenv

load_dotenv()


@dataclass
class ChunkConfig:
    """Configuration for chunking."""
    size: int = 500
    overlap_ratio: float = 0.2
    min_chunk: int = 50
    search_start_ratio: float = 0.6

    @property
    def overlap(self) -> int:
        return int(self.size * self.overlap_ratio)


def get_chunk_config() -> ChunkConfig:
    """Get chunk configuration from environment."""
    return ChunkConfig(
        size=int(os.getenv("CHUNK_SIZE", "500")),
        overlap_ratio=float(os.getenv("CHUNK_OVERLAP_RATIO", "0.2")),
        min_chunk=int(os.getenv("CHUNK_MIN_SIZE", "50")),
    )


# Boundary tiers, highest priority first. Each match ends where a chunk may be cut.
BOUNDARY_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(?:다|요|죠)\.(?=\s|$)"),  # Korean sentence-final endings (incl. 니다.)
    re.compile(r"[.。?!](?=\s|$)"),
    re.compile(r"\n\n"),
    re.compile(r"\n"),
    re.compile(r" "),
]


def find_sentence_boundary(window: str, search_start_ratio: float = 0.6) -> Optional[int]:
    """
    Find the best cut position inside a chunk window.

    Only the tail of the window (from ``search_start_ratio`` onwards) is searched,
    so a cut never produces a chunk shorter than that share of the window. Within
    the tail, the last match of the highest-priority tier wins.

    Args:
        window: Candidate chunk text
        search_start_ratio: Fraction of the window where the search region begins

    Returns:
        Offset just past the boundary, or None when the tail has no boundary at all
    """
    region_start = int(len(window) * search_start_ratio)
    region = window[region_start:]

    for pattern in BOUNDARY_PATTERNS:
        last = None
        for match in pattern.finditer(region):
            last = match
        if last is not None:
            return region_start + last.end()

    return None


def chunk_spans(text: str, config: Optional[ChunkConfig] = None) -> List[Tuple[int, int]]:
    """
    Compute (start, end) offsets of overlapping chunks over ``text``.

    Consecutive spans overlap by at most ``config.overlap`` characters and together
    cover the whole text. Fragments below ``config.min_chunk`` are folded into the
    previous span, and a short tail extends the final span instead of standing alone.
    """
    if config is None:
        config = ChunkConfig()

    n = len(text)
    if n <= config.size:
        return [(0, n)] if len(text.strip()) >= config.min_chunk else []

    spans: List[Tuple[int, int]] = []
    start = 0

    while start < n:
        end = min(start + config.size, n)

        if end < n:
            cut = find_sentence_boundary(text[start:end], config.search_start_ratio)
            if cut is not None:
                end = start + cut

        # Sub-floor tail joins this span.
        if 0 < n - end < config.min_chunk:
            end = n

        if spans and end - start < config.min_chunk:
            spans[-1] = (spans[-1][0], end)
        else:
            spans.append((start, end))

        if end >= n:
            break

        next_start = end - config.overlap
        start = next_start if next_start > start else end

    return spans


def chunk_text(text: str, config: Optional[ChunkConfig] = None) -> List[str]:
    """
    Split text into overlapping chunks of roughly ``config.size`` characters.

    Args:
        text: Segment body to split
        config: Chunk configuration (optional)

    Returns:
        Ordered chunk strings; empty when the text is below the minimum size
    """
    chunks = []
    for start, end in chunk_spans(text, config):
        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
    return chunks
