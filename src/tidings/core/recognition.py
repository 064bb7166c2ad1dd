"""Page recognition through interchangeable vision providers.

Providers are tried in a fixed, configurable order; the first one that returns a
usable transcript wins and each provider is called at most once per page. A page
fails only when every configured provider has failed.
"""

import base64
import io
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import anthropic
import google.generativeai as genai
import openai
import requests
from dotenv import load_dotenv
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from .cache import CredentialStore
from .errors import ProviderError, RecognitionError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_ORDER = ["openai", "gemini", "claude"]
UNCERTAIN_MARKER = "[?]"
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"

TEXT_PROMPT = """이 이미지는 한국 교회 월간 신문의 한 면입니다.

정확성 규칙:
1. 이미지에 보이는 글자를 그대로 옮겨 적으세요. 비슷한 단어로 바꾸거나 추측하지 마세요.
2. 사람 이름, 직분, 장소명, 숫자는 특히 보이는 그대로 적으세요.
3. 읽을 수 없는 글자는 [?]로 표시하세요.
4. 이미지에 없는 내용을 만들어내지 마세요.

기사마다 아래 형식으로 구분해 주세요. 사진 설명과 광고 문구도 포함합니다.

### 기사 1
제목: (제목)
유형: (목회편지/교회소식/행사안내/광고/인물소개/기타)
내용: (본문, 줄바꿈 유지)

### 기사 2
..."""

STRUCTURED_PROMPT = """이 이미지는 한국 교회 월간 신문의 한 면입니다.

텍스트를 보이는 그대로 읽고 추측하지 마세요. 읽을 수 없는 글자는 [?]로 표시하고,
이미지에 없는 내용은 만들지 마세요. 다음 JSON 형식으로만 답하세요:

{
  "newspaper_name": "신문 이름",
  "page_header": "페이지 상단 헤더 (없으면 null)",
  "articles": [
    {
      "title": "기사 제목",
      "subtitle": "부제목 (없으면 null)",
      "type": "목회편지 | 교회소식 | 행사안내 | 인물소개 | 광고 | 사설 | 기타",
      "author": "필자 (없으면 null)",
      "content": "본문 전체 (줄바꿈 유지)",
      "position": "상단 | 중단 | 하단 | 좌측 | 우측 | 전면"
    }
  ],
  "advertisements": [
    {"title": "광고 제목", "content": "광고 내용", "contact": "연락처 (없으면 null)"}
  ],
  "footer": "페이지 하단 정보 (없으면 null)"
}

사진 설명은 해당 기사 content에 포함하고 광고는 advertisements로 분리하세요."""

VERIFY_PROMPT = """아래는 이 이미지를 다른 모델이 읽은 결과입니다. 이미지와 한 줄씩 대조하여
잘못 읽은 글자를 바로잡은 전체 텍스트를 같은 형식으로 출력하세요.
이름, 직분, 장소명, 숫자와 날짜를 특히 확인하고, 이미지에 없는 내용은 추가하지 마세요.
읽을 수 없는 글자는 [?]로 남겨 두세요. 설명 없이 교정된 전체 텍스트만 출력하세요.

인식 결과:
"""

CONTINUITY_PROMPT = """두 개의 이미지가 주어집니다. 첫 번째는 이전 페이지, 두 번째는 다음 페이지입니다.
이전 페이지의 기사가 다음 페이지로 이어지는지 확인하세요.

확인할 점:
1. 이전 페이지 기사가 "계속", "→", "다음 면에 계속"으로 끝나는지
2. 다음 페이지가 제목 없이 시작하거나 "(전면에서 계속)"으로 시작하는지

JSON으로만 답하세요: {"isConnected": true 또는 false, "reason": "간단한 근거"}"""


@dataclass
class RecognitionConfig:
    """Configuration for recognition providers."""
    provider_order: List[str] = field(default_factory=lambda: list(DEFAULT_PROVIDER_ORDER))
    openai_model: str = "gpt-4o"
    gemini_model: str = "gemini-1.5-pro"
    claude_model: str = "claude-sonnet-4-20250514"
    timeout: float = 30.0
    image_fetch_timeout: float = 15.0
    max_tokens: int = 8000
    structured: bool = True
    verify: bool = False


def get_recognition_config() -> RecognitionConfig:
    """Get recognition configuration from environment."""
    order = os.getenv("RECOGNITION_PROVIDERS", ",".join(DEFAULT_PROVIDER_ORDER))
    return RecognitionConfig(
        provider_order=[name.strip() for name in order.split(",") if name.strip()],
        openai_model=os.getenv("OPENAI_VISION_MODEL", "gpt-4o"),
        gemini_model=os.getenv("GEMINI_VISION_MODEL", "gemini-1.5-pro"),
        claude_model=os.getenv("CLAUDE_VISION_MODEL", "claude-sonnet-4-20250514"),
        timeout=float(os.getenv("RECOGNITION_TIMEOUT", "30")),
        image_fetch_timeout=float(os.getenv("IMAGE_FETCH_TIMEOUT", "15")),
        structured=os.getenv("RECOGNITION_STRUCTURED", "true").lower() == "true",
        verify=os.getenv("RECOGNITION_VERIFY", "false").lower() == "true",
    )


class RecognizedSection(BaseModel):
    """One article/section returned by a structured extraction."""
    title: Optional[str] = None
    subtitle: Optional[str] = None
    type: Optional[str] = None
    author: Optional[str] = None
    content: str = ""
    position: Optional[str] = None


class Advertisement(BaseModel):
    title: Optional[str] = None
    content: str = ""
    contact: Optional[str] = None


class RecognitionResult(BaseModel):
    """Tagged recognition output: ``structured`` carries sections, ``text`` only raw text."""
    kind: str
    provider: str
    text: str
    name: Optional[str] = None
    page_header: Optional[str] = None
    footer: Optional[str] = None
    sections: List[RecognizedSection] = []
    advertisements: List[Advertisement] = []
    uncertain_markers: List[str] = []
    verified_by: Optional[str] = None

    @property
    def is_structured(self) -> bool:
        return self.kind == "structured"


def find_uncertain_markers(text: str, context: int = 10) -> List[str]:
    """Return a short snippet around every unreadable-glyph marker."""
    snippets = []
    start = text.find(UNCERTAIN_MARKER)
    while start != -1:
        snippets.append(text[max(0, start - context):start + len(UNCERTAIN_MARKER) + context])
        start = text.find(UNCERTAIN_MARKER, start + len(UNCERTAIN_MARKER))
    return snippets


def render_sections(sections: List[RecognizedSection], advertisements: List[Advertisement]) -> str:
    """Flatten structured sections into the headed text format used for free-text pages."""
    blocks = []
    for number, section in enumerate(sections, start=1):
        lines = [f"### 기사 {number}", f"제목: {section.title or ''}"]
        if section.type:
            lines.append(f"유형: {section.type}")
        lines.append(f"내용: {section.content}")
        blocks.append("\n".join(lines))
    for ad in advertisements:
        number = len(blocks) + 1
        blocks.append(f"### 기사 {number}\n제목: {ad.title or '광고'}\n유형: 광고\n내용: {ad.content}")
    return "\n\n".join(blocks)


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    match = re.search(r"\{[\s\S]*\}", raw or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_structured_response(raw: str, provider: str) -> RecognitionResult:
    """
    Parse a structured extraction response.

    An unparsable response is not a provider failure: the raw text is kept and
    tagged ``text`` so the segmenter splits it by delimiters instead.
    """
    parsed = extract_json_object(raw)
    articles = parsed.get("articles") if parsed else None
    if not isinstance(articles, list):
        logger.warning(f"Structured response from {provider} is not valid JSON, falling back to text")
        return RecognitionResult(
            kind="text",
            provider=provider,
            text=raw.strip(),
            uncertain_markers=find_uncertain_markers(raw),
        )

    sections = [RecognizedSection(**_clean_fields(a, RecognizedSection)) for a in articles if isinstance(a, dict)]
    ads_raw = parsed.get("advertisements") or []
    advertisements = [Advertisement(**_clean_fields(a, Advertisement)) for a in ads_raw if isinstance(a, dict)]
    text = render_sections(sections, advertisements)

    return RecognitionResult(
        kind="structured",
        provider=provider,
        text=text,
        name=parsed.get("newspaper_name"),
        page_header=parsed.get("page_header"),
        footer=parsed.get("footer"),
        sections=sections,
        advertisements=advertisements,
        uncertain_markers=find_uncertain_markers(text),
    )


def _clean_fields(data: Dict[str, Any], model: type) -> Dict[str, Any]:
    cleaned = {}
    for key in model.model_fields:
        value = data.get(key)
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, str) else str(value)
    return cleaned


class VisionProvider:
    """One multimodal recognition service. Subclasses implement ``_generate``."""

    name = "base"

    def __init__(self, model: str, credentials: Optional[CredentialStore] = None, timeout: float = 30.0, max_tokens: int = 8000):
        self.model = model
        self.credentials = credentials or CredentialStore()
        self.timeout = timeout
        self.max_tokens = max_tokens

    def label(self) -> str:
        return f"{self.name}:{self.model}"

    def api_key(self) -> Optional[str]:
        return self.credentials.get_key(self.name)

    def is_configured(self) -> bool:
        return bool(self.api_key())

    def _generate(self, prompt: str, images: List[Tuple[bytes, str]], json_output: bool = False) -> str:
        raise NotImplementedError

    def generate(self, prompt: str, images: List[Tuple[bytes, str]], json_output: bool = False) -> str:
        """Call the provider, normalizing every failure into ProviderError."""
        try:
            text = self._generate(prompt, images, json_output)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(self.name, str(e)) from e
        if not text or not text.strip():
            raise ProviderError(self.name, "empty response")
        return text

    def extract(self, image: bytes, mime_type: str, structured: bool = True) -> RecognitionResult:
        """Recognize one page image."""
        if structured:
            raw = self.generate(STRUCTURED_PROMPT, [(image, mime_type)], json_output=True)
            return parse_structured_response(raw, self.name)

        raw = self.generate(TEXT_PROMPT, [(image, mime_type)])
        return RecognitionResult(
            kind="text",
            provider=self.name,
            text=raw.strip(),
            uncertain_markers=find_uncertain_markers(raw),
        )

    def verify(self, image: bytes, mime_type: str, transcript: str) -> str:
        """Ask for a corrected full transcript of ``transcript`` against the image."""
        return self.generate(VERIFY_PROMPT + transcript, [(image, mime_type)]).strip()

    def compare(self, images: List[Tuple[bytes, str]]) -> Dict[str, Any]:
        raw = self.generate(CONTINUITY_PROMPT, images, json_output=True)
        return extract_json_object(raw) or {}


class OpenAIVisionProvider(VisionProvider):
    name = "openai"

    def _generate(self, prompt: str, images: List[Tuple[bytes, str]], json_output: bool = False) -> str:
        client = openai.OpenAI(api_key=self.api_key(), timeout=self.timeout, max_retries=0)
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for data, mime_type in images:
            encoded = base64.b64encode(data).decode("ascii")
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:{mime_type};base64,{encoded}", "detail": "high"},
            })

        kwargs: Dict[str, Any] = {}
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}

        response = client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": content}],
            max_tokens=self.max_tokens,
            temperature=0,
            **kwargs,
        )
        return response.choices[0].message.content or ""


class GeminiVisionProvider(VisionProvider):
    name = "gemini"

    def _generate(self, prompt: str, images: List[Tuple[bytes, str]], json_output: bool = False) -> str:
        genai.configure(api_key=self.api_key())
        generation_config: Dict[str, Any] = {"temperature": 0.0, "max_output_tokens": self.max_tokens}
        if json_output:
            generation_config["response_mime_type"] = "application/json"

        model = genai.GenerativeModel(model_name=self.model, generation_config=generation_config)
        parts: List[Any] = [prompt]
        parts.extend({"mime_type": mime_type, "data": data} for data, mime_type in images)

        response = model.generate_content(parts, request_options={"timeout": self.timeout})
        return response.text or ""


class AnthropicVisionProvider(VisionProvider):
    name = "claude"

    def _generate(self, prompt: str, images: List[Tuple[bytes, str]], json_output: bool = False) -> str:
        client = anthropic.Anthropic(api_key=self.api_key(), timeout=self.timeout, max_retries=0)
        content: List[Dict[str, Any]] = []
        for data, mime_type in images:
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": mime_type, "data": base64.b64encode(data).decode("ascii")},
            })
        content.append({"type": "text", "text": prompt})

        response = client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": content}],
        )
        return "".join(block.text for block in response.content if getattr(block, "type", None) == "text")


PROVIDER_CLASSES = {
    "openai": OpenAIVisionProvider,
    "gemini": GeminiVisionProvider,
    "claude": AnthropicVisionProvider,
}


def build_providers(config: RecognitionConfig, credentials: Optional[CredentialStore] = None) -> List[VisionProvider]:
    """Instantiate providers in configured fallback order."""
    credentials = credentials or CredentialStore()
    models = {
        "openai": config.openai_model,
        "gemini": config.gemini_model,
        "claude": config.claude_model,
    }
    providers = []
    for name in config.provider_order:
        provider_class = PROVIDER_CLASSES.get(name)
        if provider_class is None:
            logger.warning(f"Unknown recognition provider '{name}' ignored")
            continue
        providers.append(provider_class(models[name], credentials, config.timeout, config.max_tokens))
    return providers


class ProviderChain:
    """Ordered fallback over vision providers, first success wins."""

    def __init__(self, providers: List[VisionProvider], structured: bool = True):
        self.providers = providers
        self.structured = structured

    @classmethod
    def from_config(cls, config: Optional[RecognitionConfig] = None, credentials: Optional[CredentialStore] = None) -> "ProviderChain":
        config = config or get_recognition_config()
        return cls(build_providers(config, credentials), structured=config.structured)

    def available(self) -> List[VisionProvider]:
        return [p for p in self.providers if p.is_configured()]

    def recognize(self, image: bytes, mime_type: str) -> RecognitionResult:
        """
        Recognize one page, falling through providers in order.

        Raises:
            RecognitionError: every configured provider failed (or none is configured)
        """
        errors: Dict[str, str] = {}
        for provider in self.available():
            try:
                result = provider.extract(image, mime_type, structured=self.structured)
                logger.info(f"Page recognized by {provider.label()} ({result.kind}, {len(result.text)} chars)")
                return result
            except ProviderError as e:
                logger.warning(f"Recognition provider {provider.label()} failed: {e}")
                errors[provider.name] = str(e)

        raise RecognitionError(errors)

    def verify(self, result: RecognitionResult, image: bytes, mime_type: str) -> RecognitionResult:
        """
        Cross-check a free-text result with a different provider.

        Skipped for structured results and when no second provider is configured.
        A failed verification keeps the original transcript.
        """
        if result.is_structured:
            return result

        verifier = next((p for p in self.available() if p.name != result.provider), None)
        if verifier is None:
            logger.debug("Verification skipped: only one recognition provider configured")
            return result

        try:
            corrected = verifier.verify(image, mime_type, result.text)
        except ProviderError as e:
            logger.warning(f"Verification by {verifier.label()} failed, keeping original: {e}")
            return result

        return result.model_copy(update={
            "text": corrected,
            "uncertain_markers": find_uncertain_markers(corrected),
            "verified_by": verifier.name,
        })


class ContinuityChecker:
    """Two-image comparison deciding whether an article runs across adjacent pages."""

    def __init__(self, chain: ProviderChain):
        self.chain = chain

    def is_connected(self, previous: Tuple[bytes, str], current: Tuple[bytes, str]) -> bool:
        providers = self.chain.available()
        if not providers:
            return False
        provider = providers[0]
        try:
            verdict = provider.compare([previous, current])
        except ProviderError as e:
            logger.warning(f"Continuity check by {provider.label()} failed: {e}")
            return False
        return verdict.get("isConnected") is True


def sniff_mime_type(data: bytes, fallback: str = "image/jpeg") -> str:
    """Detect an image mime type from its bytes with Pillow."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            fmt = (image.format or "").lower()
    except (UnidentifiedImageError, OSError):
        return fallback
    if not fmt:
        return fallback
    return "image/jpeg" if fmt == "jpeg" else f"image/{fmt}"


def fetch_image(url: str, session: Optional[requests.Session] = None, timeout: float = 15.0) -> Tuple[bytes, str]:
    """Download a page image; raises requests exceptions on failure."""
    http = session or requests.Session()
    response = http.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
    response.raise_for_status()
    data = response.content
    header_type = (response.headers.get("Content-Type") or "").split(";")[0].strip()
    fallback = header_type if header_type.startswith("image/") else "image/jpeg"
    return data, sniff_mime_type(data, fallback)
