from tidings.core.metadata import DEFAULT_TITLE, MetadataExtractor, SegmentMetadata, parse_metadata_response


class StubExtractor(MetadataExtractor):
    def __init__(self, response=None, error=None):
        super().__init__()
        self.response = response
        self.error = error
        self.calls = 0

    def _complete(self, text):
        self.calls += 1
        if self.error:
            raise self.error
        return self.response


def test_parse_full_response():
    raw = """{"title": "부활절 연합예배", "type": "행사안내", "speaker": "김영수 목사",
              "event_name": "부활절 예배", "event_date": "4월 20일",
              "bible_references": ["요한복음 11:25"], "keywords": ["부활", "예배", "연합", "찬양", "성찬", "교제"]}"""
    metadata = parse_metadata_response(raw)
    assert metadata.title == "부활절 연합예배"
    assert metadata.speaker == "김영수 목사"
    assert metadata.bible_references == ["요한복음 11:25"]
    assert len(metadata.keywords) == 5


def test_parse_normalizes_fields():
    metadata = parse_metadata_response('{"title": "  ", "speaker": "", "keywords": "예배", "bible_references": null}')
    assert metadata.title == DEFAULT_TITLE
    assert metadata.speaker is None
    assert metadata.keywords == ["예배"]
    assert metadata.bible_references == []


def test_parse_garbage_returns_default():
    assert parse_metadata_response("죄송합니다, 처리할 수 없습니다") == SegmentMetadata()
    assert parse_metadata_response('{"title": ') == SegmentMetadata()


def test_extract_never_raises():
    extractor = StubExtractor(error=TimeoutError("timed out"))
    metadata = extractor.extract("본문")
    assert metadata.title == DEFAULT_TITLE
    assert metadata.keywords == []


def test_extract_skips_empty_text():
    extractor = StubExtractor(response='{"title": "x"}')
    assert extractor.extract("   ") == SegmentMetadata()
    assert extractor.calls == 0


def test_extract_parses_response():
    extractor = StubExtractor(response='{"title": "교회 소식", "type": "교회소식"}')
    metadata = extractor.extract("새가족 환영회가 열립니다.")
    assert metadata.title == "교회 소식"
    assert metadata.type == "교회소식"
