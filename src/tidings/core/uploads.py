"""Local upload ingestion: scanned PDFs or image files become an in-memory issue."""

import logging
from datetime import date
from pathlib import Path
from typing import List, Optional, Tuple

import fitz  # PyMuPDF

from .discovery import (
    bulletin_date_label,
    bulletin_number_for,
    issue_date_label,
    issue_number_for,
)
from .recognition import sniff_mime_type
from .store import Issue, Series, SourceType

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".gif", ".webp"}


def render_pdf_pages(pdf_path: Path, zoom: float = 2.0) -> List[Tuple[bytes, str]]:
    """Render every PDF page to PNG bytes."""
    doc = fitz.open(pdf_path)
    try:
        pages = []
        matrix = fitz.Matrix(zoom, zoom)  # Higher resolution for recognition
        for page_num in range(doc.page_count):
            pix = doc[page_num].get_pixmap(matrix=matrix)
            pages.append((pix.tobytes("png"), "image/png"))
        logger.info(f"Rendered {len(pages)} pages from {pdf_path}")
        return pages
    finally:
        doc.close()


def load_upload_images(path: Path) -> List[Tuple[bytes, str]]:
    """
    Load page images from a PDF, a single image, or a directory of images.

    Directory entries are ordered by file name.
    """
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
        return [_read_image(p) for p in files]
    if path.suffix.lower() == ".pdf":
        return render_pdf_pages(path)
    if path.suffix.lower() in IMAGE_SUFFIXES:
        return [_read_image(path)]
    raise ValueError(f"Unsupported upload: {path}")


def _read_image(path: Path) -> Tuple[bytes, str]:
    data = path.read_bytes()
    return data, sniff_mime_type(data)


def issue_from_upload(
    path: Path,
    year: int,
    month: int,
    day: Optional[int] = None,
    series: Series = Series.NEWSLETTER,
) -> Tuple[Issue, List[Tuple[bytes, str]]]:
    """
    Build an upload issue and its page images.

    Newsletter uploads are numbered like discovered issues, so uploading an edition
    that was also crawled resolves to the same issue.
    """
    images = load_upload_images(path)
    if not images:
        raise ValueError(f"No page images found in {path}")

    if series == Series.BULLETIN:
        if day is None:
            raise ValueError("Bulletin uploads need a day")
        published = date(year, month, day)
        number = bulletin_number_for(published)
        label = bulletin_date_label(published)
    else:
        number = issue_number_for(year, month)
        label = issue_date_label(year, month)

    issue = Issue(
        series=series,
        issue_number=number,
        issue_date=label,
        year=year,
        month=month,
        day=day,
        page_count=len(images),
        source_type=SourceType.UPLOAD,
    )
    return issue, images
