from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings

logger = logging.getLogger(__name__)

OTHER = "Other"

# Evaluated top to bottom; the first pattern whose category the user has wins.
CATEGORY_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "Food",
        re.compile(
            r"food|eat|meal|restaurant|pizza|burger|lunch|breakfast|dinner|grocery"
            r"|snack|chips|chocolate|coffee|tea",
            re.IGNORECASE,
        ),
    ),
    (
        "Transport",
        re.compile(
            r"transport|taxi|uber|bus|metro|train|flight|car|bike|fuel|gas|parking|ride",
            re.IGNORECASE,
        ),
    ),
    (
        "Shopping",
        re.compile(
            r"shop|buy|clothes|dress|shoes|shirt|pants|jacket|coat|bag|purchase",
            re.IGNORECASE,
        ),
    ),
    (
        "Entertainment",
        re.compile(
            r"movie|cinema|game|concert|ticket|show|entertainment|party|fun",
            re.IGNORECASE,
        ),
    ),
    (
        "Bills",
        re.compile(
            r"bill|electricity|water|phone|internet|rent|housing|utility|subscription"
            r"|membership",
            re.IGNORECASE,
        ),
    ),
    (
        "Healthcare",
        re.compile(
            r"hospital|doctor|medicine|medical|health|pharmacy|cure|treatment",
            re.IGNORECASE,
        ),
    ),
    (
        "Skincare",
        re.compile(
            r"skincare|facewash|lotion|cream|soap|shampoo|conditioner|deodorant",
            re.IGNORECASE,
        ),
    ),
    (OTHER, re.compile(r"other|misc|miscellaneous", re.IGNORECASE)),
]

_WORD_RE = re.compile(r"[a-z][a-z&'-]{2,}")


class CategorizationUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class CategorizationResult:
    category: str
    confidence: float
    reasoning: str
    source: str  # "llm" | "keyword" | "name" | "default"


def categorize_by_keyword(
    text: str, category_names: Sequence[str]
) -> CategorizationResult:
    known = {name.lower() for name in category_names}
    for label, pattern in CATEGORY_PATTERNS:
        if pattern.search(text) and label.lower() in known:
            return CategorizationResult(
                category=label,
                confidence=0.7,
                reasoning=f"Matched by keyword pattern for {label}",
                source="keyword",
            )

    words = _WORD_RE.findall(text.lower())
    for name in category_names:
        name_lower = name.lower()
        if any(word in name_lower or name_lower in word for word in words):
            return CategorizationResult(
                category=name,
                confidence=0.6,
                reasoning="Matched category name in text",
                source="name",
            )

    return CategorizationResult(
        category=OTHER,
        confidence=0.3,
        reasoning="No matching category found",
        source="default",
    )


def extract_json_object(content: str) -> dict:
    """Parse the first JSON object in ``content``.

    Model output may carry leading prose or trailing junk after the
    object; when a plain parse fails the text is cut at the closing brace
    that balances the first opening one and parsed again.
    """
    start = content.find("{")
    if start == -1:
        raise CategorizationUnavailable("No JSON object in response")
    candidate = content[start:]
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        depth = 0
        closing = -1
        for idx, char in enumerate(candidate):
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    closing = idx
                    break
        if closing <= 0:
            raise CategorizationUnavailable("Unbalanced JSON in response")
        try:
            payload = json.loads(candidate[: closing + 1])
        except json.JSONDecodeError as exc:
            raise CategorizationUnavailable("Malformed JSON in response") from exc
    if not isinstance(payload, dict):
        raise CategorizationUnavailable("Response JSON is not an object")
    return payload


def build_prompt(text: str, category_names: Sequence[str], context: str) -> str:
    return (
        "You are an expense categorizer. Extract the item/service description "
        "from the text and categorize it.\n\n"
        f'Input text: "{text}"\n'
        f"Expense type: {context}\n"
        f"Available categories: {', '.join(category_names)}\n\n"
        "Instructions:\n"
        "1. Ignore numbers, dates, and amounts - focus on WHAT the expense is for\n"
        "2. Use the most relevant category from the list\n"
        '3. Use "Other" only if nothing fits\n'
        "4. Respond ONLY with valid JSON, nothing else\n\n"
        '{"category":"CategoryName","confidence":0.9,"reasoning":"Why this category"}'
    )


class LLMCategorizer:
    """Chat-completions client for an OpenAI-compatible endpoint."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.llm_api_key)

    def __call__(
        self, text: str, category_names: Sequence[str], context: str
    ) -> CategorizationResult:
        if not self.enabled:
            raise CategorizationUnavailable("No API key configured")
        content = self._complete(build_prompt(text, category_names, context))
        payload = extract_json_object(content)
        category = payload.get("category")
        if not isinstance(category, str) or not category.strip():
            raise CategorizationUnavailable("Response has no category")
        try:
            confidence = float(payload.get("confidence") or 0.8)
        except (TypeError, ValueError):
            confidence = 0.8
        return CategorizationResult(
            category=category.strip(),
            confidence=confidence,
            reasoning=str(payload.get("reasoning") or "Categorized by LLM"),
            source="llm",
        )

    def _complete(self, prompt: str) -> str:
        body = json.dumps(
            {
                "model": self.settings.llm_model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": 0.3,
                "max_tokens": 150,
                "top_p": 0.9,
            }
        ).encode("utf-8")
        url = self.settings.llm_base_url.rstrip("/") + "/chat/completions"
        req = Request(
            url,
            data=body,
            method="POST",
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.settings.llm_api_key}",
            },
        )
        try:
            with urlopen(req, timeout=self.settings.llm_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            raise CategorizationUnavailable(f"LLM request failed: {exc}") from exc

        try:
            return str(payload["choices"][0]["message"]["content"] or "")
        except (KeyError, IndexError, TypeError) as exc:
            raise CategorizationUnavailable("Unexpected LLM response shape") from exc


Backend = Callable[[str, Sequence[str], str], CategorizationResult]


class CategorizationResolver:
    """Primary backend first, keyword table when it cannot answer.

    The backend gets one attempt per call; any failure degrades to
    :func:`categorize_by_keyword` and is never raised to the caller.
    """

    def __init__(self, backend: Optional[Backend] = None) -> None:
        self.backend = backend if backend is not None else LLMCategorizer()

    def resolve(
        self, text: str, category_names: Sequence[str], context: str = "casual"
    ) -> CategorizationResult:
        text = (text or "").strip()
        if not text:
            return CategorizationResult(OTHER, 0.0, "Empty description", "default")
        if not category_names:
            result = categorize_by_keyword(text, category_names)
            logger.warning(
                f"categorize_fallback: reason=no_categories confidence={result.confidence}"
            )
            return result
        try:
            return self.backend(text, category_names, context)
        except Exception as exc:
            result = categorize_by_keyword(text, category_names)
            logger.warning(
                f"categorize_fallback: reason={exc} category={result.category} "
                f"confidence={result.confidence}"
            )
            return result
