import io
import json

import pytest
from PIL import Image

from tidings.core.cache import CredentialStore
from tidings.core.errors import ProviderError, RecognitionError
from tidings.core.recognition import (
    ContinuityChecker,
    ProviderChain,
    RecognitionConfig,
    RecognitionResult,
    build_providers,
    fetch_image,
    find_uncertain_markers,
    parse_structured_response,
    sniff_mime_type,
)

from conftest import FakeResponse, FakeSession, ScriptedProvider

STRUCTURED = json.dumps({
    "newspaper_name": "제일소식",
    "page_header": "2024년 3월호",
    "articles": [
        {"title": "목회 편지", "type": "목회편지", "author": "김영수", "content": "사랑하는 [?] 성도 여러분"},
        {"title": "교회 소식", "type": "교회소식", "content": "새가족 환영회", "position": 2},
    ],
    "advertisements": [{"title": "꽃집", "content": "꽃 배달", "contact": "031-000-0000"}],
}, ensure_ascii=False)


def _png() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), "white").save(buffer, format="PNG")
    return buffer.getvalue()


def test_parse_structured_response():
    result = parse_structured_response("```json\n" + STRUCTURED + "\n```", "gemini")
    assert result.is_structured
    assert result.name == "제일소식"
    assert [s.title for s in result.sections] == ["목회 편지", "교회 소식"]
    assert result.sections[1].position == "2"
    assert result.advertisements[0].contact == "031-000-0000"
    assert "### 기사 3" in result.text
    assert len(result.uncertain_markers) == 1


def test_unparsable_structured_response_falls_back_to_text():
    result = parse_structured_response("### 기사 1\n제목: 안내\n내용: 본문", "openai")
    assert result.kind == "text"
    assert result.text.startswith("### 기사 1")


def test_find_uncertain_markers():
    assert find_uncertain_markers("이름은 김[?]수 입니다", context=2) == [" 김[?]수 "]
    assert find_uncertain_markers("깨끗한 텍스트") == []


def test_first_success_wins():
    first = ScriptedProvider("openai", ["첫 번째 결과"])
    second = ScriptedProvider("gemini", ["두 번째 결과"])
    result = ProviderChain([first, second], structured=False).recognize(b"img", "image/png")
    assert result.provider == "openai"
    assert result.text == "첫 번째 결과"
    assert second.prompts == []


def test_fallback_tries_each_provider_once():
    first = ScriptedProvider("openai", [TimeoutError("timed out")])
    second = ScriptedProvider("gemini", [""])
    third = ScriptedProvider("claude", ["세 번째 결과"])
    result = ProviderChain([first, second, third], structured=False).recognize(b"img", "image/png")
    assert result.provider == "claude"
    assert len(first.prompts) == 1
    assert len(second.prompts) == 1


def test_unconfigured_providers_are_skipped():
    missing = ScriptedProvider("openai", ["무시"], configured=False)
    present = ScriptedProvider("claude", ["결과"])
    chain = ProviderChain([missing, present], structured=False)
    assert [p.name for p in chain.available()] == ["claude"]
    assert chain.recognize(b"img", "image/png").provider == "claude"
    assert missing.prompts == []


def test_all_providers_failing_raises_with_every_error():
    chain = ProviderChain([
        ScriptedProvider("openai", [RuntimeError("boom")]),
        ScriptedProvider("gemini", [ConnectionError("down")]),
    ], structured=False)
    with pytest.raises(RecognitionError) as excinfo:
        chain.recognize(b"img", "image/png")
    assert set(excinfo.value.errors) == {"openai", "gemini"}


def test_empty_response_is_a_provider_error():
    with pytest.raises(ProviderError):
        ScriptedProvider("openai", ["  "]).generate("prompt", [])


def test_structured_chain_parses_json():
    provider = ScriptedProvider("gemini", [STRUCTURED])
    result = ProviderChain([provider], structured=True).recognize(b"img", "image/png")
    assert result.is_structured
    assert len(result.sections) == 2


def test_verify_uses_a_different_provider():
    first = ScriptedProvider("openai", ["원본"])
    second = ScriptedProvider("gemini", ["교정된 전사"])
    chain = ProviderChain([first, second], structured=False)
    result = chain.verify(RecognitionResult(kind="text", provider="openai", text="원본"), b"img", "image/png")
    assert result.text == "교정된 전사"
    assert result.verified_by == "gemini"
    assert "원본" in second.prompts[0]


def test_verify_skipped_with_single_provider():
    chain = ProviderChain([ScriptedProvider("openai", ["다른 결과"])], structured=False)
    original = RecognitionResult(kind="text", provider="openai", text="원본")
    assert chain.verify(original, b"img", "image/png") is original


def test_verify_failure_keeps_original():
    chain = ProviderChain([
        ScriptedProvider("openai", ["원본"]),
        ScriptedProvider("gemini", [RuntimeError("boom")]),
    ], structured=False)
    original = RecognitionResult(kind="text", provider="openai", text="원본")
    assert chain.verify(original, b"img", "image/png").text == "원본"


def test_continuity_checker():
    connected = ContinuityChecker(ProviderChain([ScriptedProvider("openai", ['{"isConnected": true}'])]))
    assert connected.is_connected((b"a", "image/png"), (b"b", "image/png"))

    separate = ContinuityChecker(ProviderChain([ScriptedProvider("openai", ['{"isConnected": false}'])]))
    assert not separate.is_connected((b"a", "image/png"), (b"b", "image/png"))

    broken = ContinuityChecker(ProviderChain([ScriptedProvider("openai", [RuntimeError("boom")])]))
    assert not broken.is_connected((b"a", "image/png"), (b"b", "image/png"))


def test_build_providers_follows_configured_order():
    config = RecognitionConfig(provider_order=["claude", "unknown", "openai"])
    providers = build_providers(config, CredentialStore(loader=lambda: []))
    assert [p.name for p in providers] == ["claude", "openai"]
    assert providers[0].model == config.claude_model


def test_sniff_mime_type():
    assert sniff_mime_type(_png()) == "image/png"
    assert sniff_mime_type(b"not an image", "image/gif") == "image/gif"


def test_fetch_image():
    data = _png()
    session = FakeSession({
        "https://example.org/files/1.jpg": FakeResponse(content=data, headers={"Content-Type": "image/jpeg"}),
    })
    assert fetch_image("https://example.org/files/1.jpg", session) == (data, "image/png")
