"""Issue ingestion pipeline: fetch -> recognize -> correct -> segment -> metadata -> chunk -> embed -> persist.

Issues are processed strictly one at a time. Within an issue every page is
recognized and segmented first so cross-page continuations can be stitched before
anything is written; segments and chunks are then persisted page by page, each page
only after all of its embeddings succeeded.
"""

import hashlib
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .cache import CredentialStore
from .chunking import ChunkConfig, chunk_text, get_chunk_config
from .correction import CorrectionDictionary, CorrectionLayer, CorrectionResult, compute_confidence
from .discovery import SourceDiscovery
from .embed import Embedder
from .errors import EmbeddingError, QuotaExhaustedError, RecognitionError, TidingsError
from .logging_config import (
    get_audit_logger,
    log_batch_summary,
    log_corrections_applied,
    log_issue_completed,
    log_issue_failed,
    log_page_recognized,
    log_page_skipped,
)
from .metadata import MetadataExtractor
from .recognition import (
    ContinuityChecker,
    ProviderChain,
    RecognitionResult,
    fetch_image,
    get_recognition_config,
    render_sections,
)
from .segmenter import (
    SegmentDraft,
    SegmenterConfig,
    get_segmenter_config,
    has_manifest_continuation,
    segments_from_result,
    stitch_pages,
)
from .store import Chunk, Issue, IssueStatus, Page, Segment, check_transition

logger = logging.getLogger(__name__)

Image = Tuple[bytes, str]


@dataclass
class ProgressEvent:
    """One entry of the batch progress stream."""
    step: str
    message: str
    percent: int
    detail: Dict[str, Any] = field(default_factory=dict)
    type: str = "progress"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class StopFlag:
    """Externally settable stop request, optionally mirrored to a file for other processes."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._event = threading.Event()

    def request(self) -> None:
        self._event.set()
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(str(time.time()))

    def is_set(self) -> bool:
        return self._event.is_set() or bool(self.path and self.path.exists())

    def clear(self) -> None:
        self._event.clear()
        if self.path and self.path.exists():
            self.path.unlink()


@dataclass
class BatchResult:
    """Summary of one batch run."""
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    remaining: int = 0
    chunks: int = 0
    first_error: Optional[str] = None
    failed_issues: List[int] = field(default_factory=list)
    stopped: bool = False
    quota_exhausted: bool = False

    def record_failure(self, issue_number: int, error: str) -> None:
        self.failed += 1
        self.failed_issues.append(issue_number)
        if self.first_error is None:
            self.first_error = f"Issue {issue_number}: {error}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PageWork:
    """Per-page state carried from recognition to persistence."""
    page_number: int
    image_url: Optional[str] = None
    image: Optional[Image] = None
    page: Optional[Page] = None
    result: Optional[RecognitionResult] = None
    correction: Optional[CorrectionResult] = None
    segments: List[SegmentDraft] = field(default_factory=list)
    duplicate: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.duplicate


@dataclass
class IssueOutcome:
    issue_number: int
    pages: int = 0
    segments: int = 0
    chunks: int = 0
    failed_pages: List[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return not self.failed_pages


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class IngestPipeline:
    """Sequential per-issue ingestion with progress reporting and cooperative stop."""

    def __init__(
        self,
        store,
        chain: ProviderChain,
        embedder: Embedder,
        metadata: MetadataExtractor,
        corrections: Optional[CorrectionLayer] = None,
        continuity: Optional[ContinuityChecker] = None,
        segmenter_config: Optional[SegmenterConfig] = None,
        chunk_config: Optional[ChunkConfig] = None,
        verify: bool = False,
        progress: Optional[Callable[[ProgressEvent], None]] = None,
        stop_flag: Optional[StopFlag] = None,
        session: Optional[requests.Session] = None,
        image_timeout: float = 15.0,
    ):
        self.store = store
        self.chain = chain
        self.embedder = embedder
        self.metadata = metadata
        self.corrections = corrections or CorrectionLayer()
        self.continuity = continuity
        self.segmenter_config = segmenter_config or get_segmenter_config()
        self.chunk_config = chunk_config or get_chunk_config()
        self.verify = verify
        self.progress = progress
        self.stop_flag = stop_flag or StopFlag()
        self.session = session or requests.Session()
        self.image_timeout = image_timeout
        self.audit = get_audit_logger("pipeline")
        self._percent = 0

    def _emit(self, step: str, message: str, **detail: Any) -> None:
        if self.progress is None:
            return
        try:
            self.progress(ProgressEvent(step=step, message=message, percent=self._percent, detail=detail))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _set_percent(self, done_issues: int, total: int, fraction: float = 0.0) -> None:
        if total:
            self._percent = min(100, int((done_issues + fraction) * 100 / total))

    def run(
        self,
        issues: List[Issue],
        force: bool = False,
        images: Optional[Dict[int, List[Image]]] = None,
    ) -> BatchResult:
        """
        Process issues in order.

        Completed issues are skipped unless ``force`` is set. The stop flag is
        checked before each issue; quota exhaustion ends the run immediately.

        Args:
            issues: Issue descriptors, processed in the given order
            force: Reprocess completed issues (their prior content is replaced)
            images: In-memory page images by issue number, used instead of fetching URLs

        Returns:
            BatchResult summary
        """
        result = BatchResult(total=len(issues))
        images = images or {}
        self._percent = 0
        self._emit("start", f"Processing {len(issues)} issues", total=len(issues))

        for index, issue in enumerate(issues):
            self._set_percent(index, len(issues))
            if self.stop_flag.is_set():
                result.stopped = True
                result.remaining = len(issues) - index
                self._emit("stopped", f"Stop requested, {result.remaining} issues remain", remaining=result.remaining)
                logger.info(f"Stop requested; {result.remaining} issues left unprocessed")
                # The request is consumed so the next run starts normally.
                self.stop_flag.clear()
                break

            existing = self.store.get_issue(issue.series, issue.issue_number)
            if existing is not None and existing.status == IssueStatus.COMPLETED and not force:
                result.skipped += 1
                self._emit("skip", f"Issue {issue.issue_number} already completed", issue_number=issue.issue_number)
                continue

            try:
                outcome = self.process_issue(issue, force=force, images=images.get(issue.issue_number), index=index, total=len(issues))
            except QuotaExhaustedError as e:
                result.quota_exhausted = True
                result.record_failure(issue.issue_number, f"embedding quota exhausted: {e}")
                result.remaining = len(issues) - index - 1
                self._emit("quota", "Embedding quota exhausted; stopping the run", issue_number=issue.issue_number)
                break
            except TidingsError as e:
                result.record_failure(issue.issue_number, str(e))
                continue

            result.chunks += outcome.chunks
            if outcome.completed:
                result.processed += 1
            else:
                result.record_failure(issue.issue_number, outcome.failed_pages[0])

        if not result.stopped and not result.quota_exhausted:
            self._percent = 100
        self._emit("done", "Batch finished", **result.to_dict())
        log_batch_summary(self.audit, result.to_dict())
        return result

    def process_issue(
        self,
        issue: Issue,
        force: bool = False,
        images: Optional[List[Image]] = None,
        index: int = 0,
        total: int = 1,
    ) -> IssueOutcome:
        """
        Fully process one issue: prior content is deleted, pages recognized, content persisted.

        Raises:
            QuotaExhaustedError: the issue is left failed and the caller must stop
            StoreError: the issue could not be moved into processing
        """
        started = time.time()
        stored = self.store.upsert_issue(issue)
        check_transition(stored.status, IssueStatus.PROCESSING, force=force)
        self.store.set_issue_status(stored.id, IssueStatus.PROCESSING)
        self.store.delete_issue_content(stored.id)

        sources = self._page_sources(issue, images)
        outcome = IssueOutcome(issue_number=issue.issue_number, pages=len(sources))
        self._emit("issue", f"Issue {issue.issue_number} ({issue.issue_date}): {len(sources)} pages", issue_number=issue.issue_number)

        try:
            works = []
            for position, (page_number, url, image) in enumerate(sources):
                self._set_percent(index, total, 0.5 * position / max(1, len(sources)))
                works.append(self._recognize_page(stored, page_number, url, image))

            self._stitch(works)

            for position, work in enumerate(works):
                self._set_percent(index, total, 0.5 + 0.5 * position / max(1, len(sources)))
                if work.error:
                    outcome.failed_pages.append(f"page {work.page_number}: {work.error}")
                    continue
                if work.duplicate:
                    continue
                try:
                    segments, chunks = self._persist_page(stored, work)
                except QuotaExhaustedError:
                    self.store.set_page_status(work.page.id, "failed")
                    raise
                except EmbeddingError as e:
                    logger.error(f"Issue {issue.issue_number} page {work.page_number}: embedding failed: {e}")
                    self.store.set_page_status(work.page.id, "failed")
                    outcome.failed_pages.append(f"page {work.page_number}: {e}")
                    continue
                outcome.segments += segments
                outcome.chunks += chunks
        except QuotaExhaustedError as e:
            self.store.set_issue_status(stored.id, IssueStatus.FAILED, error=f"embedding quota exhausted: {e}")
            log_issue_failed(self.audit, issue.issue_number, str(e), quota_exhausted=True)
            raise
        except TidingsError as e:
            self.store.set_issue_status(stored.id, IssueStatus.FAILED, error=str(e))
            log_issue_failed(self.audit, issue.issue_number, str(e))
            raise

        if outcome.completed:
            self.store.set_issue_status(stored.id, IssueStatus.COMPLETED)
            log_issue_completed(
                self.audit,
                issue.issue_number,
                outcome.pages,
                outcome.segments,
                outcome.chunks,
                round((time.time() - started) * 1000, 1),
            )
            self._emit("issue_done", f"Issue {issue.issue_number} completed", issue_number=issue.issue_number,
                       segments=outcome.segments, chunks=outcome.chunks)
        else:
            error = "; ".join(outcome.failed_pages)
            self.store.set_issue_status(stored.id, IssueStatus.FAILED, error=error)
            log_issue_failed(self.audit, issue.issue_number, error)
            self._emit("issue_failed", f"Issue {issue.issue_number} failed", issue_number=issue.issue_number, error=error)

        return outcome

    @staticmethod
    def _page_sources(issue: Issue, images: Optional[List[Image]]) -> List[Tuple[int, Optional[str], Optional[Image]]]:
        if images:
            return [(number, None, image) for number, image in enumerate(images, start=1)]
        return [(number, url, None) for number, url in enumerate(issue.image_urls, start=1)]

    def _recognize_page(self, issue: Issue, page_number: int, url: Optional[str], image: Optional[Image]) -> PageWork:
        """Phase 1 for one page. Failures are recorded on the returned work, never raised."""
        work = PageWork(page_number=page_number, image_url=url, image=image)

        if work.image is None:
            self._emit("fetch", f"Downloading page {page_number}", issue_number=issue.issue_number, page=page_number)
            try:
                work.image = fetch_image(url, self.session, self.image_timeout)
            except requests.RequestException as e:
                logger.error(f"Issue {issue.issue_number} page {page_number}: image download failed: {e}")
                work.error = f"image download failed: {e}"
                return work

        data, mime_type = work.image
        file_hash = content_hash(data)

        duplicate = self.store.find_page_by_hash(file_hash, exclude_issue_id=issue.id)
        if duplicate is not None:
            work.duplicate = True
            work.page = self.store.upsert_page(Page(
                issue_id=issue.id,
                page_number=page_number,
                image_url=url,
                file_hash=file_hash,
                status="duplicate",
            ))
            log_page_skipped(self.audit, issue.issue_number, page_number, "duplicate content hash", file_hash)
            self._emit("skip_page", f"Page {page_number} duplicates an already processed image",
                       issue_number=issue.issue_number, page=page_number)
            return work

        self._emit("recognize", f"Recognizing page {page_number}", issue_number=issue.issue_number, page=page_number)
        try:
            result = self.chain.recognize(data, mime_type)
        except RecognitionError as e:
            logger.error(f"Issue {issue.issue_number} page {page_number}: {e}")
            work.error = str(e)
            work.page = self.store.upsert_page(Page(
                issue_id=issue.id, page_number=page_number, image_url=url, file_hash=file_hash, status="failed",
            ))
            return work

        if self.verify:
            result = self.chain.verify(result, data, mime_type)
        log_page_recognized(self.audit, issue.issue_number, page_number, result.provider, result.kind,
                            len(result.text), verified=result.verified_by is not None)

        self._emit("correct", f"Correcting page {page_number}", issue_number=issue.issue_number, page=page_number)
        result, correction = self._correct(result)
        log_corrections_applied(self.audit, issue.issue_number, page_number, len(correction.corrections),
                                correction.warnings, correction.hallucinations, correction.confidence)

        work.result = result
        work.correction = correction
        work.segments = segments_from_result(result, self.segmenter_config)
        work.page = self.store.upsert_page(Page(
            issue_id=issue.id,
            page_number=page_number,
            image_url=url,
            file_hash=file_hash,
            ocr_text=result.text,
            ocr_provider=result.provider,
            confidence=correction.confidence,
            warnings=correction.warnings + correction.hallucinations,
            status="recognized",
        ))
        self._emit("segment", f"Page {page_number}: {len(work.segments)} segments",
                   issue_number=issue.issue_number, page=page_number, segments=len(work.segments))
        return work

    def _correct(self, result: RecognitionResult) -> Tuple[RecognitionResult, CorrectionResult]:
        """Correct a recognition result, section by section when it is structured."""
        if not result.is_structured:
            correction = self.corrections.correct(result.text)
            return result.model_copy(update={"text": correction.corrected_text}), correction

        combined = CorrectionResult(corrected_text="")
        sections = []
        for section in result.sections:
            updates = {}
            for field_name in ("title", "author", "content"):
                value = getattr(section, field_name)
                if not value:
                    continue
                fixed = self.corrections.correct(value)
                updates[field_name] = fixed.corrected_text
                combined.corrections.extend(fixed.corrections)
                combined.warnings.extend(w for w in fixed.warnings if w not in combined.warnings)
                combined.hallucinations.extend(h for h in fixed.hallucinations if h not in combined.hallucinations)
            sections.append(section.model_copy(update=updates))

        text = render_sections(sections, result.advertisements)
        combined.corrected_text = text
        issues = len(combined.corrections) + len(combined.warnings) + len(combined.hallucinations)
        combined.confidence = compute_confidence(issues, len(text))
        return result.model_copy(update={"sections": sections, "text": text}), combined

    def _stitch(self, works: List[PageWork]) -> None:
        """Merge continuing segments across adjacent, successfully recognized pages."""
        connected = [False] * len(works)
        for i in range(1, len(works)):
            previous, current = works[i - 1], works[i]
            if not (previous.ok and current.ok and previous.segments and current.segments):
                continue
            titles_expected = any(segment.title for segment in current.segments)
            if has_manifest_continuation(previous.segments[-1], current.segments[0], titles_expected):
                connected[i] = True
            elif self.continuity is not None:
                self._emit("continuity", f"Checking continuity of pages {i} and {i + 1}", page=current.page_number)
                connected[i] = self.continuity.is_connected(previous.image, current.image)

        if not any(connected):
            return
        stitched = stitch_pages([work.segments for work in works], connected, self.segmenter_config)
        for work, segments in zip(works, stitched):
            work.segments = segments

    def _persist_page(self, issue: Issue, work: PageWork) -> Tuple[int, int]:
        """
        Phase 2 for one page: metadata, chunking and embedding for every segment,
        then a single write of all segments and chunks.
        """
        content: List[Tuple[Segment, List[Chunk]]] = []
        for draft in work.segments:
            self._emit("metadata", f"Extracting metadata for page {work.page_number}",
                       issue_number=issue.issue_number, page=work.page_number)
            meta = self.metadata.extract(draft.body)
            segment = Segment(
                issue_id=issue.id,
                page_id=work.page.id,
                title=draft.title or meta.title,
                content=draft.body,
                article_type=draft.type or meta.type,
                speaker=draft.author or meta.speaker,
                event_name=meta.event_name,
                event_date=meta.event_date,
                bible_references=meta.bible_references,
                keywords=meta.keywords,
                continues_from_previous=draft.continues_from_previous,
                continues_to_next=draft.continues_to_next,
            )

            texts = chunk_text(draft.body, self.chunk_config)
            self._emit("embed", f"Embedding {len(texts)} chunks", issue_number=issue.issue_number,
                       page=work.page_number, chunks=len(texts))
            vectors = self.embedder.embed(texts) if texts else []

            chunks = [
                Chunk(
                    chunk_index=index,
                    chunk_text=text,
                    issue_number=issue.issue_number,
                    issue_date=issue.issue_date,
                    page_number=work.page_number,
                    article_title=segment.title,
                    article_type=segment.article_type,
                    embedding=vector,
                )
                for index, (text, vector) in enumerate(zip(texts, vectors))
            ]
            content.append((segment, chunks))

        self._emit("save", f"Saving page {work.page_number}", issue_number=issue.issue_number, page=work.page_number)
        chunk_total = self.store.replace_page_content(work.page, content)
        return len(content), chunk_total


def build_pipeline(
    store,
    verify: Optional[bool] = None,
    progress: Optional[Callable[[ProgressEvent], None]] = None,
    stop_flag: Optional[StopFlag] = None,
) -> IngestPipeline:
    """Wire a pipeline from environment configuration and the store's dictionary tables."""
    config = get_recognition_config()
    credentials = CredentialStore(loader=store.load_api_keys)
    chain = ProviderChain.from_config(config, credentials)
    return IngestPipeline(
        store=store,
        chain=chain,
        embedder=Embedder(credentials),
        metadata=MetadataExtractor(credentials),
        corrections=CorrectionLayer(CorrectionDictionary.from_store(store)),
        continuity=ContinuityChecker(chain),
        verify=config.verify if verify is None else verify,
        progress=progress,
        stop_flag=stop_flag,
        image_timeout=config.image_fetch_timeout,
    )


def scan_and_ingest(
    discovery: SourceDiscovery,
    pipeline: IngestPipeline,
    full_rescan: bool = False,
    force: bool = False,
    start_url: Optional[str] = None,
    end_url: Optional[str] = None,
    max_pages: Optional[int] = None,
) -> BatchResult:
    """Discover issues, then ingest them newest first."""
    issues = discovery.discover(full_rescan=full_rescan, start_url=start_url, end_url=end_url, max_pages=max_pages)
    if not issues:
        logger.info("Nothing to process")
    return pipeline.run(issues, force=force)


def reprocess(store, pipeline: IngestPipeline, issue_numbers: List[int], series=None) -> BatchResult:
    """Forced reprocessing of specific cached issues, completed ones included."""
    issues = []
    for number in issue_numbers:
        issue = store.get_issue(series, number) if series is not None else _find_issue(store, number)
        if issue is None:
            logger.warning(f"Issue {number} is not cached, skipping")
            continue
        issues.append(issue)
    return pipeline.run(issues, force=True)


def _find_issue(store, number: int) -> Optional[Issue]:
    for issue in store.list_issues():
        if issue.issue_number == number:
            return issue
    return None
