"""
MessageKeywordExtractor - LLM-backed keyword annotation for stored messages.

The model is asked for a JSON object keyed by two language codes, e.g.
{"zh": [...], "en": [...]}. Parsing is best-effort: strict JSON, then the
outermost {...} block, then per-key array extraction.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger

from chatrecall.core.errors import ExtractionFailed
from chatrecall.memory.models import MessageKeywords
from chatrecall.memory.text import normalize_keywords

if TYPE_CHECKING:
    from chatrecall.config.manager import ConfigManager


_SYSTEM_PROMPT = "You extract comprehensive normalized keywords."

_USER_PROMPT = """You are a keyword extractor. Return a JSON object {{ "{primary}": [], "{secondary}": [] }}.
{primary}: keywords, synonyms and domain terms in language '{primary}'.
{secondary}: keywords, stems, plurals, abbreviations and synonyms in language '{secondary}'.
Rules:
- Return JSON only, no explanation
- Lower-case, deduplicate, normalize separators (- or space)

Text:
{text}"""


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(x) for x in value if x is not None]
    return []


def _extract_array(text: str, key: str) -> List[str]:
    m = re.search(r'"' + re.escape(key) + r'"\s*:\s*\[(.*?)\]', text, flags=re.IGNORECASE | re.DOTALL)
    if not m:
        return []
    body = m.group(1)
    try:
        arr = json.loads(f"[{body}]")
        return _string_list(arr)
    except ValueError:
        parts = [p.strip().strip("'\"") for p in body.split(",")]
        return [p for p in parts if p]


def parse_keywords(content: str, primary_key: str = "zh", secondary_key: str = "en") -> MessageKeywords:
    """Parse a model reply into a normalized MessageKeywords."""
    text = str(content or "")

    data: Optional[Dict[str, Any]] = None
    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            data = obj
    except ValueError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start >= 0 and end > start:
            try:
                obj = json.loads(text[start:end])
                if isinstance(obj, dict):
                    data = obj
            except ValueError:
                data = None

    if data is not None:
        primary = _string_list(data.get(primary_key))
        secondary = _string_list(data.get(secondary_key))
    else:
        primary = _extract_array(text, primary_key)
        secondary = _extract_array(text, secondary_key)

    return MessageKeywords.of(normalize_keywords(primary), normalize_keywords(secondary))


class MessageKeywordExtractor:
    """Turns free text into a MessageKeywords annotation using a chat model."""

    def __init__(
        self,
        llm: Any,
        *,
        primary_language: str = "zh",
        secondary_language: str = "en",
        max_chars: int = 4000,
    ) -> None:
        self._llm = llm
        self.primary_language = primary_language
        self.secondary_language = secondary_language
        self._max_chars = max(int(max_chars), 1)

    async def extract(self, text: str) -> MessageKeywords:
        if self._llm is None:
            raise ExtractionFailed("No chat model configured for keyword extraction")

        body = str(text or "").strip()
        if not body:
            return MessageKeywords()

        prompt = _USER_PROMPT.format(
            primary=self.primary_language,
            secondary=self.secondary_language,
            text=body[: self._max_chars],
        )
        try:
            resp = await self._llm.ainvoke(
                [SystemMessage(content=_SYSTEM_PROMPT), HumanMessage(content=prompt)]
            )
        except Exception as e:
            raise ExtractionFailed(f"Keyword model call failed: {e}") from e

        content = resp.content if hasattr(resp, "content") else str(resp)
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)

        keywords = parse_keywords(content, self.primary_language, self.secondary_language)
        logger.debug(
            f"Extracted {len(keywords.primary)}+{len(keywords.secondary)} keywords "
            f"({self.primary_language}/{self.secondary_language})"
        )
        return keywords


def extractor_from_config(config: "ConfigManager") -> Optional[MessageKeywordExtractor]:
    """Build the configured extractor, or None when extraction is disabled."""
    kw_cfg = config.get("keywords", {}) or {}
    if not kw_cfg.get("enabled", False):
        return None

    provider = str(kw_cfg.get("provider", "openai")).lower()
    model = str(kw_cfg.get("model", "") or "").strip()
    if provider != "openai" or not model:
        logger.warning(f"Keyword extraction disabled: unsupported provider/model ({provider}/{model or '-'})")
        return None

    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        model=model,
        temperature=float(kw_cfg.get("temperature", 0.2)),
        max_tokens=int(kw_cfg.get("max_tokens", 512)),
    )
    return MessageKeywordExtractor(
        llm,
        primary_language=str(kw_cfg.get("primary_language", "zh")),
        secondary_language=str(kw_cfg.get("secondary_language", "en")),
    )
