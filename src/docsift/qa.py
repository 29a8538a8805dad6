"""Retrieval-augmented Q&A over the document library."""

import logging
from dataclasses import dataclass, field
from typing import Any

import anthropic

from .errors import ConfigError
from .models import SourceDocument
from .query.prompts import ANSWER_SYSTEM_PROMPT, ANSWER_USER_PROMPT
from .query.search import NO_RELEVANT_INFORMATION, SearchEngine

logger = logging.getLogger(__name__)

DEFAULT_ANSWER_MODEL = "claude-sonnet-4-20250514"


@dataclass
class Answer:
    answer: str
    sources: list[SourceDocument] = field(default_factory=list)
    tag_prefilter_used: bool = False


def get_llm_client(config: dict[str, Any]) -> anthropic.Anthropic:
    api_key = config.get("claude_api_key")
    if not api_key:
        raise ConfigError("Claude API key required. Set ANTHROPIC_API_KEY or claude_api_key in config.")
    return anthropic.Anthropic(api_key=api_key)


def ask_question(
    question: str,
    engine: SearchEngine,
    llm: Any,
    model: str = DEFAULT_ANSWER_MODEL,
    max_tokens: int = 2000,
    **search_kwargs: Any,
) -> Answer:
    """Answer a question from the most relevant chunks.

    When retrieval finds nothing the model is not called at all and the
    answer is the no-information sentinel.
    """
    response = engine.search(question, **search_kwargs)
    if response.is_empty:
        return Answer(NO_RELEVANT_INFORMATION, [], response.tag_prefilter_used)

    context = engine.citations(response)
    logger.info(f"Answering from {len(response.results)} chunk(s) across {len(response.sources)} document(s)")

    message = llm.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=ANSWER_SYSTEM_PROMPT,
        messages=[{"role": "user", "content": ANSWER_USER_PROMPT.format(context=context, question=question)}],
    )
    text = "".join(block.text for block in message.content if getattr(block, "type", None) == "text")

    return Answer(answer=text.strip(), sources=response.sources, tag_prefilter_used=response.tag_prefilter_used)
