"""Structured logging configuration for Tidings."""

from typing import Dict, Any, List, Optional
import logging

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging for pipeline runs."""

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger bound to a pipeline component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_issue_discovered(
    logger: structlog.BoundLogger,
    source_kind: str,
    issue_number: int,
    issue_date: str,
    page_count: int,
) -> None:
    logger.info(
        "issue_discovered",
        source_kind=source_kind,
        issue_number=issue_number,
        issue_date=issue_date,
        page_count=page_count,
        event_type="discovery",
    )


def log_page_recognized(
    logger: structlog.BoundLogger,
    issue_number: int,
    page_number: int,
    provider: str,
    result_kind: str,
    text_length: int,
    verified: bool = False,
) -> None:
    """Log which provider produced a page transcript."""
    logger.info(
        "page_recognized",
        issue_number=issue_number,
        page_number=page_number,
        provider=provider,
        result_kind=result_kind,
        text_length=text_length,
        verified=verified,
        event_type="recognition",
    )


def log_page_skipped(
    logger: structlog.BoundLogger,
    issue_number: int,
    page_number: int,
    reason: str,
    file_hash: Optional[str] = None,
) -> None:
    logger.info(
        "page_skipped",
        issue_number=issue_number,
        page_number=page_number,
        reason=reason,
        file_hash=file_hash,
        event_type="dedup",
    )


def log_corrections_applied(
    logger: structlog.BoundLogger,
    issue_number: int,
    page_number: int,
    corrections: int,
    warnings: List[str],
    hallucinations: List[str],
    confidence: float,
) -> None:
    """Log correction findings for one page; findings never block persistence."""
    logger.info(
        "corrections_applied",
        issue_number=issue_number,
        page_number=page_number,
        corrections=corrections,
        warnings=warnings,
        hallucinations=hallucinations,
        confidence=round(confidence, 3),
        event_type="correction",
    )


def log_issue_completed(
    logger: structlog.BoundLogger,
    issue_number: int,
    pages: int,
    segments: int,
    chunks: int,
    execution_time_ms: float,
) -> None:
    logger.info(
        "issue_completed",
        issue_number=issue_number,
        pages=pages,
        segments=segments,
        chunks=chunks,
        execution_time_ms=execution_time_ms,
        event_type="issue_status",
    )


def log_issue_failed(
    logger: structlog.BoundLogger,
    issue_number: int,
    error: str,
    quota_exhausted: bool = False,
) -> None:
    logger.error(
        "issue_failed",
        issue_number=issue_number,
        error=error,
        quota_exhausted=quota_exhausted,
        event_type="issue_status",
    )


def log_batch_summary(
    logger: structlog.BoundLogger,
    summary: Dict[str, Any],
) -> None:
    """Log the processed/skipped/failed summary of a batch run."""
    logger.info(
        "batch_summary",
        **summary,
        event_type="batch",
    )
