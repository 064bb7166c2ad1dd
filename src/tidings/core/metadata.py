"""Structured metadata extraction for a single segment.

Metadata only enriches segments; any failure here degrades to a default and never
stops chunking or embedding.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, List, Optional

import openai
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator

from .cache import CredentialStore

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "제목 없음"
MAX_KEYWORDS = 5

METADATA_PROMPT = """다음 교회 신문 기사에서 메타데이터를 추출해 주세요.

- title: 기사 제목
- type: 기사 유형 (목회편지, 교회소식, 행사안내, 인물소개, 광고, 기타)
- speaker: 주요 인물 또는 화자 (없으면 null)
- event_name: 언급된 행사명 (없으면 null)
- event_date: 언급된 날짜나 시간 (없으면 null)
- bible_references: 언급된 성경 구절 목록
- keywords: 핵심 키워드 5개 이내

JSON으로만 답하세요:
{"title":"...","type":"...","speaker":null,"event_name":null,"event_date":null,"bible_references":[],"keywords":[]}"""


@dataclass
class MetadataConfig:
    """Configuration for metadata extraction."""
    model: str = "gpt-4o-mini"
    max_input_chars: int = 2000
    timeout: float = 30.0
    max_tokens: int = 1024


def get_metadata_config() -> MetadataConfig:
    """Get metadata configuration from environment."""
    return MetadataConfig(
        model=os.getenv("METADATA_MODEL", "gpt-4o-mini"),
        max_input_chars=int(os.getenv("METADATA_MAX_INPUT_CHARS", "2000")),
        timeout=float(os.getenv("METADATA_TIMEOUT", "30")),
    )


class SegmentMetadata(BaseModel):
    """Fixed metadata schema for one segment."""
    title: str = DEFAULT_TITLE
    type: Optional[str] = None
    speaker: Optional[str] = None
    event_name: Optional[str] = None
    event_date: Optional[str] = None
    bible_references: List[str] = []
    keywords: List[str] = []

    @field_validator("title", mode="before")
    @classmethod
    def _default_title(cls, value: Any) -> str:
        if value is None or not str(value).strip():
            return DEFAULT_TITLE
        return str(value).strip()

    @field_validator("type", "speaker", "event_name", "event_date", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("bible_references", "keywords", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(item).strip() for item in value if item is not None and str(item).strip()]


def parse_metadata_response(raw: str) -> SegmentMetadata:
    """Parse a model response into metadata, returning the default on any problem."""
    match = re.search(r"\{[\s\S]*\}", raw or "")
    if not match:
        return SegmentMetadata()
    try:
        data = json.loads(match.group(0))
        if not isinstance(data, dict):
            return SegmentMetadata()
        metadata = SegmentMetadata(**data)
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning(f"Metadata response could not be parsed: {e}")
        return SegmentMetadata()

    metadata.keywords = metadata.keywords[:MAX_KEYWORDS]
    return metadata


class MetadataExtractor:
    """One structured-output call per segment."""

    def __init__(self, credentials: Optional[CredentialStore] = None, config: Optional[MetadataConfig] = None):
        self.credentials = credentials or CredentialStore()
        self.config = config or get_metadata_config()

    def _complete(self, text: str) -> str:
        api_key = self.credentials.get_key("openai")
        if not api_key:
            raise ValueError("OpenAI API key not found")

        client = openai.OpenAI(api_key=api_key, timeout=self.config.timeout, max_retries=0)
        response = client.chat.completions.create(
            model=self.config.model,
            messages=[
                {"role": "system", "content": METADATA_PROMPT},
                {"role": "user", "content": f"기사 텍스트:\n{text[:self.config.max_input_chars]}"},
            ],
            response_format={"type": "json_object"},
            temperature=0,
            max_tokens=self.config.max_tokens,
        )
        return response.choices[0].message.content or ""

    def extract(self, text: str) -> SegmentMetadata:
        """
        Extract metadata for one segment body.

        Args:
            text: Segment body

        Returns:
            SegmentMetadata; the default (placeholder title, empty fields) on any failure
        """
        if not text or not text.strip():
            return SegmentMetadata()

        try:
            raw = self._complete(text)
        except Exception as e:
            logger.warning(f"Metadata extraction failed, using defaults: {e}")
            return SegmentMetadata()

        return parse_metadata_response(raw)
