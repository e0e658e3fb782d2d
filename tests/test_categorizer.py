import pytest

from categorizer import (
    CategorizationResolver,
    CategorizationResult,
    CategorizationUnavailable,
    LLMCategorizer,
    categorize_by_keyword,
    extract_json_object,
)
from config import Settings

NAMES = ["Food", "Transport", "Other"]


def _unavailable(text, names, context):
    raise CategorizationUnavailable("offline")


def test_keyword_fallback_picks_first_matching_pattern() -> None:
    result = categorize_by_keyword("250 lunch with friends", ["Food", "Other"])
    assert result.category == "Food"
    assert result.source == "keyword"
    assert result.confidence == 0.7


def test_keyword_pattern_ignored_when_category_missing() -> None:
    result = categorize_by_keyword("taxi to airport", ["Food", "Other"])
    assert result.category == "Other"
    assert result.source == "default"


def test_category_name_match_when_no_pattern_applies() -> None:
    result = categorize_by_keyword("new gardening gloves", ["Gardening", "Other"])
    assert result.category == "Gardening"
    assert result.source == "name"


def test_keyword_fallback_is_deterministic() -> None:
    results = {categorize_by_keyword("coffee and uber", NAMES) for _ in range(5)}
    assert len(results) == 1
    assert results.pop().category == "Food"


def test_extract_json_recovers_from_trailing_text() -> None:
    content = 'Sure! {"category": "Food", "confidence": 0.9} hope this helps }'
    assert extract_json_object(content) == {"category": "Food", "confidence": 0.9}


def test_extract_json_rejects_truncated_object() -> None:
    with pytest.raises(CategorizationUnavailable):
        extract_json_object('{"category": "Fo')
    with pytest.raises(CategorizationUnavailable):
        extract_json_object("no json here")


def test_resolver_prefers_backend() -> None:
    def backend(text, names, context):
        return CategorizationResult("Transport", 0.95, "ride", "llm")

    result = CategorizationResolver(backend).resolve("lunch", NAMES)
    assert result.category == "Transport"
    assert result.source == "llm"


def test_resolver_falls_back_when_backend_fails() -> None:
    def broken(text, names, context):
        raise RuntimeError("boom")

    result = CategorizationResolver(broken).resolve("250 lunch with friends", NAMES)
    assert result.category == "Food"
    assert result.source == "keyword"


def test_resolver_handles_empty_inputs() -> None:
    resolver = CategorizationResolver(_unavailable)
    assert resolver.resolve("   ", NAMES).confidence == 0.0
    assert resolver.resolve("pizza", []).category == "Other"


def test_llm_categorizer_parses_completion(monkeypatch) -> None:
    settings = Settings(
        database_url="sqlite://",
        session_secret="s",
        session_max_age_hours=1,
        llm_api_key="key",
        llm_base_url="http://llm.invalid/v1",
        llm_model="m",
        llm_timeout_secs=1,
    )
    llm = LLMCategorizer(settings)
    monkeypatch.setattr(
        llm, "_complete", lambda prompt: '{"category": " Food ", "reasoning": "meal"}'
    )

    result = llm("lunch", NAMES, "casual")
    assert result == CategorizationResult("Food", 0.8, "meal", "llm")


def test_llm_categorizer_without_key_is_unavailable() -> None:
    settings = Settings("sqlite://", "s", 1, "", "http://llm.invalid", "m", 1)
    llm = LLMCategorizer(settings)
    assert not llm.enabled
    with pytest.raises(CategorizationUnavailable):
        llm("lunch", NAMES, "casual")
