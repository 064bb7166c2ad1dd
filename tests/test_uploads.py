import io

import fitz
import pytest
from PIL import Image

from tidings.core.store import Series, SourceType
from tidings.core.uploads import issue_from_upload, load_upload_images


def _png(color) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def scan_dir(tmp_path):
    (tmp_path / "02.png").write_bytes(_png("blue"))
    (tmp_path / "01.png").write_bytes(_png("red"))
    (tmp_path / "notes.txt").write_text("not a page")
    return tmp_path


def test_directory_pages_are_ordered_by_name(scan_dir):
    images = load_upload_images(scan_dir)
    assert [data for data, _ in images] == [_png("red"), _png("blue")]
    assert all(mime == "image/png" for _, mime in images)


def test_pdf_pages_are_rendered(tmp_path):
    path = tmp_path / "issue.pdf"
    doc = fitz.open()
    doc.new_page()
    doc.new_page()
    doc.save(str(path))
    doc.close()

    images = load_upload_images(path)

    assert len(images) == 2
    assert all(mime == "image/png" for _, mime in images)


def test_unsupported_file_is_rejected(tmp_path):
    path = tmp_path / "issue.docx"
    path.write_bytes(b"")
    with pytest.raises(ValueError):
        load_upload_images(path)


def test_newsletter_upload_shares_discovered_numbering(scan_dir):
    issue, images = issue_from_upload(scan_dir, year=2024, month=3)
    assert issue.issue_number == 482
    assert issue.issue_date == "2024년 3월호"
    assert issue.source_type == SourceType.UPLOAD
    assert issue.page_count == len(images) == 2


def test_bulletin_upload_is_numbered_by_date(scan_dir):
    issue, _ = issue_from_upload(scan_dir, year=2024, month=3, day=10, series=Series.BULLETIN)
    assert issue.issue_number == 20240310
    assert issue.issue_date == "2024년 3월 10일"


def test_bulletin_upload_needs_a_day(scan_dir):
    with pytest.raises(ValueError):
        issue_from_upload(scan_dir, year=2024, month=3, series=Series.BULLETIN)


def test_empty_directory_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        issue_from_upload(tmp_path, year=2024, month=3)
