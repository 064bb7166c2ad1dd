import itertools
from typing import Any, Dict, List, Optional, Tuple

import pytest
import requests

from tidings.core.metadata import SegmentMetadata
from tidings.core.recognition import VisionProvider
from tidings.core.store import Chunk, Issue, IssueStatus, Page, Segment, Series


class FakeStore:
    """In-memory stand-in for PostgresStore with the same method surface."""

    def __init__(self, members=None, corrections=None, places=None, api_keys=None):
        self.issues: Dict[Tuple[str, int], Issue] = {}
        self.pages: Dict[int, Page] = {}
        self.segments: Dict[int, Segment] = {}
        self.chunks: Dict[int, Chunk] = {}
        self.members = members or []
        self.corrections = corrections or []
        self.places = places or []
        self.api_keys = api_keys or []
        self.status_history: List[Tuple[int, IssueStatus]] = []
        self._ids = itertools.count(1)

    def _issue_by_id(self, issue_id: int) -> Issue:
        return next(issue for issue in self.issues.values() if issue.id == issue_id)

    def add_issue(self, issue: Issue) -> Issue:
        stored = issue.model_copy(update={"id": next(self._ids)})
        self.issues[(stored.series.value, stored.issue_number)] = stored
        return stored

    def get_issue(self, series: Series, issue_number: int) -> Optional[Issue]:
        issue = self.issues.get((series.value, issue_number))
        return issue.model_copy() if issue else None

    def list_issues(self, series: Optional[Series] = None, status: Optional[IssueStatus] = None) -> List[Issue]:
        issues = [
            issue.model_copy() for issue in self.issues.values()
            if (series is None or issue.series == series) and (status is None or issue.status == status)
        ]
        return sorted(issues, key=lambda issue: issue.issue_number, reverse=True)

    def max_issue_number(self, series: Series) -> Optional[int]:
        numbers = [issue.issue_number for issue in self.issues.values() if issue.series == series]
        return max(numbers) if numbers else None

    def upsert_issue(self, issue: Issue) -> Issue:
        key = (issue.series.value, issue.issue_number)
        existing = self.issues.get(key)
        if existing is None:
            return self.add_issue(issue).model_copy()
        updated = existing.model_copy(update={
            "issue_date": issue.issue_date,
            "image_urls": issue.image_urls,
            "page_count": issue.page_count,
            "source_type": issue.source_type,
        })
        self.issues[key] = updated
        return updated.model_copy()

    def set_issue_status(self, issue_id: int, status: IssueStatus, error: Optional[str] = None) -> None:
        issue = self._issue_by_id(issue_id)
        self.issues[(issue.series.value, issue.issue_number)] = issue.model_copy(update={"status": status, "error": error})
        self.status_history.append((issue_id, status))

    def delete_issue_content(self, issue_id: int) -> None:
        segment_ids = {sid for sid, segment in self.segments.items() if segment.issue_id == issue_id}
        self.chunks = {cid: c for cid, c in self.chunks.items() if c.segment_id not in segment_ids}
        self.segments = {sid: s for sid, s in self.segments.items() if sid not in segment_ids}
        self.pages = {pid: p for pid, p in self.pages.items() if p.issue_id != issue_id}

    def delete_incomplete_issues(self, series: Series) -> int:
        doomed = [issue for issue in self.issues.values()
                  if issue.series == series and issue.status != IssueStatus.COMPLETED]
        for issue in doomed:
            self.delete_issue_content(issue.id)
            del self.issues[(issue.series.value, issue.issue_number)]
        return len(doomed)

    def find_page_by_hash(self, file_hash: str, exclude_issue_id: Optional[int] = None) -> Optional[Page]:
        for page in self.pages.values():
            if page.file_hash == file_hash and page.status == "completed" and page.issue_id != exclude_issue_id:
                return page
        return None

    def upsert_page(self, page: Page) -> Page:
        for page_id, existing in self.pages.items():
            if existing.issue_id == page.issue_id and existing.page_number == page.page_number:
                stored = page.model_copy(update={"id": page_id})
                self.pages[page_id] = stored
                return stored
        stored = page.model_copy(update={"id": next(self._ids)})
        self.pages[stored.id] = stored
        return stored

    def replace_page_content(self, page: Page, content: List[Tuple[Segment, List[Chunk]]]) -> int:
        old = {sid for sid, segment in self.segments.items() if segment.page_id == page.id}
        self.chunks = {cid: c for cid, c in self.chunks.items() if c.segment_id not in old}
        self.segments = {sid: s for sid, s in self.segments.items() if sid not in old}

        total = 0
        for segment, chunks in content:
            segment_id = next(self._ids)
            self.segments[segment_id] = segment.model_copy(update={"id": segment_id})
            for chunk in chunks:
                chunk_id = next(self._ids)
                self.chunks[chunk_id] = chunk.model_copy(update={"id": chunk_id, "segment_id": segment_id})
                total += 1
        self.pages[page.id] = self.pages[page.id].model_copy(update={"status": "completed"})
        return total

    def set_page_status(self, page_id: int, status: str) -> None:
        self.pages[page_id] = self.pages[page_id].model_copy(update={"status": status})

    def status_counts(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for issue in self.issues.values():
            key = f"{issue.series.value}:{issue.status.value}"
            counts[key] = counts.get(key, 0) + 1
        return {"issues": counts, "pages": len(self.pages), "segments": len(self.segments), "chunks": len(self.chunks)}

    def load_members(self) -> List[Dict[str, Any]]:
        return list(self.members)

    def load_corrections(self) -> List[Dict[str, Any]]:
        return list(self.corrections)

    def load_places(self) -> List[Dict[str, Any]]:
        return list(self.places)

    def load_api_keys(self) -> List[Dict[str, Any]]:
        return list(self.api_keys)

    def segments_for_issue(self, issue_number: int) -> List[Segment]:
        issue = next(i for i in self.issues.values() if i.issue_number == issue_number)
        return [s for s in self.segments.values() if s.issue_id == issue.id]

    def chunks_for_segment(self, segment_id: int) -> List[Chunk]:
        return sorted((c for c in self.chunks.values() if c.segment_id == segment_id), key=lambda c: c.chunk_index)


class ScriptedProvider(VisionProvider):
    """Vision provider replaying canned responses; an Exception entry is raised."""

    def __init__(self, name: str, responses: List[Any], configured: bool = True):
        super().__init__(model="scripted")
        self.name = name
        self.responses = list(responses)
        self.configured = configured
        self.prompts: List[str] = []

    def api_key(self) -> Optional[str]:
        return "test-key" if self.configured else None

    def _generate(self, prompt, images, json_output=False):
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeEmbedder:
    model = "text-embedding-3-small"
    dimensions = 1536

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[List[str]] = []

    def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [[0.01 * (i + 1)] * self.dimensions for i in range(len(texts))]


class FakeMetadata:
    def __init__(self, metadata: Optional[SegmentMetadata] = None):
        self.metadata = metadata or SegmentMetadata()
        self.calls: List[str] = []

    def extract(self, text: str) -> SegmentMetadata:
        self.calls.append(text)
        return self.metadata


class FakeEmbeddingItem:
    def __init__(self, embedding):
        self.embedding = embedding


class FakeEmbeddingResponse:
    def __init__(self, vectors):
        self.data = [FakeEmbeddingItem(v) for v in vectors]


class FakeEmbeddingsAPI:
    def __init__(self, dimensions: int = 1536, fail_on_call: Optional[int] = None, error: Optional[Exception] = None):
        self.dimensions = dimensions
        self.fail_on_call = fail_on_call
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def create(self, model, input, dimensions):
        self.calls.append({"model": model, "input": list(input), "dimensions": dimensions})
        if self.error is not None and (self.fail_on_call is None or len(self.calls) == self.fail_on_call):
            raise self.error
        return FakeEmbeddingResponse([[0.5] * self.dimensions for _ in input])


class FakeOpenAIClient:
    def __init__(self, **kwargs):
        self.embeddings = FakeEmbeddingsAPI(**kwargs)


class QuotaError(Exception):
    status_code = 429


class FakeResponse:
    def __init__(self, text: str = "", content: bytes = b"", status_code: int = 200, headers=None):
        self.text = text
        self.content = content
        self.status_code = status_code
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """requests.Session stand-in serving canned responses by URL."""

    def __init__(self, routes: Dict[str, FakeResponse]):
        self.routes = routes
        self.requested: List[str] = []

    def get(self, url, headers=None, timeout=None):
        self.requested.append(url)
        if url not in self.routes:
            raise requests.ConnectionError(f"no route for {url}")
        return self.routes[url]


@pytest.fixture
def store():
    return FakeStore()


def make_issue(number: int, pages: int = 1, status: IssueStatus = IssueStatus.PENDING) -> Issue:
    return Issue(
        issue_number=number,
        issue_date=f"issue {number}",
        year=2024,
        month=1,
        image_urls=[f"https://example.org/files/{number}/{p}.jpg" for p in range(1, pages + 1)],
        page_count=pages,
        status=status,
    )
