"""Chat-completion client used to generate search tags and summaries."""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import aiohttp

from config.settings import LLMConfig
from pipelines.errors import ModelError
from .model_runner import ModelRunnerClient

logger = logging.getLogger(__name__)

MAX_CONTENT_FOR_ENRICHMENT = 20000

TAGS_PROMPT = """You are helping build a RAG (Retrieval-Augmented Generation) system for technical documentation search.

CONTEXT: We use hybrid search combining:
- BM25 (keyword matching) - finds exact term matches
- Vector search (semantic similarity) - finds conceptually related content

YOUR TASK: Generate 10-15 search terms that will help users find this document.

REQUIREMENTS:
1. Include SYNONYMS for key concepts (e.g., if doc mentions "function", add "method", "procedure")
2. Include RELATED CONCEPTS not explicitly in the text (e.g., if doc is about "HTTP servers", add "REST API", "web service")
3. Include COMMON MISSPELLINGS or alternative phrasings users might search
4. Include both TECHNICAL TERMS and PLAIN ENGLISH equivalents
5. Focus on terms a developer would actually type into a search box

DOCUMENT:
Title: {title}

Content:
{content}

OUTPUT FORMAT: Return ONLY comma-separated terms, no explanations, no numbering, no quotes.
Example: term1, term2, term3"""

SUMMARY_PROMPT = """You are helping build a RAG (Retrieval-Augmented Generation) system for technical documentation search.

CONTEXT: This summary will be:
1. Indexed for BM25 keyword search - so include important technical terms
2. Embedded as a vector for semantic search - so capture the conceptual meaning
3. Shown to users in search results - so be clear and informative

YOUR TASK: Write a comprehensive summary (3-5 paragraphs) that maximizes searchability.

REQUIREMENTS:
1. FIRST PARAGRAPH: What is this document about? What problem does it solve?
2. SECOND PARAGRAPH: Key concepts, APIs, functions, or components mentioned
3. THIRD PARAGRAPH: Step-by-step procedures or workflows (if any)
4. FOURTH PARAGRAPH: Prerequisites, requirements, or related topics
5. Use SPECIFIC TECHNICAL TERMS that users would search for
6. Include ALTERNATIVE PHRASINGS for key concepts
7. Mention the TARGET AUDIENCE (beginners, advanced, etc.)

DOCUMENT:
Title: {title}

Content:
{content}

OUTPUT FORMAT: Return ONLY the summary paragraphs. No headers, no bullet points, no preamble like "This document...". Start directly with the content."""


@dataclass
class EnrichmentResult:
    """Tags and summary generated for one document."""
    tags: List[str] = field(default_factory=list)
    summary: str = ""


def parse_tags(response: str) -> List[str]:
    """Split a comma-separated model response into trimmed, non-empty tags."""
    return [tag.strip() for tag in response.split(",") if tag.strip()]


class LLMClient(ModelRunnerClient):
    """Client for the runner's ``/chat/completions`` endpoint.

    The runner serves one generation at a time; callers serialize requests.
    """

    def __init__(self, config: LLMConfig, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(
            socket_path=config.socket_path,
            model=config.model,
            base_url=config.base_url,
            timeout=config.timeout,
            session=session,
        )
        self.max_content_chars = config.max_content_chars or MAX_CONTENT_FOR_ENRICHMENT
        self.max_tokens = config.max_tokens

    async def complete(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        """Send a single user message and return the trimmed reply.

        Args:
            prompt: User message
            max_tokens: Response length limit; 0 or None means unlimited

        Raises:
            ModelError: on any transport or API failure, or an empty choice list
        """
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        limit = self.max_tokens if max_tokens is None else max_tokens
        if limit:
            payload["max_tokens"] = limit

        data = await self._post_json("chat/completions", payload)
        choices = data.get("choices") or []
        if not isinstance(choices, list) or not choices:
            raise ModelError("no response returned")

        choice = choices[0]
        if not isinstance(choice, dict):
            raise ModelError("unexpected response shape: choice is not an object")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise ModelError("unexpected response shape: message is not an object")
        content = message.get("content") or ""
        if not isinstance(content, str):
            raise ModelError("unexpected response shape: content is not a string")
        return content.strip()

    async def enrich_document(self, title: str, content: str) -> EnrichmentResult:
        """Generate search tags and a summary for a document.

        Content is truncated to ``max_content_chars`` before prompting.

        Raises:
            ModelError: if either generation fails
        """
        if len(content) > self.max_content_chars:
            content = content[:self.max_content_chars]

        logger.debug(f"Generating tags for {title!r}")
        try:
            tags_response = await self.complete(TAGS_PROMPT.format(title=title, content=content))
        except ModelError as e:
            raise ModelError(f"failed to generate tags: {e}") from e

        logger.debug(f"Generating summary for {title!r}")
        try:
            summary = await self.complete(SUMMARY_PROMPT.format(title=title, content=content))
        except ModelError as e:
            raise ModelError(f"failed to generate summary: {e}") from e

        return EnrichmentResult(tags=parse_tags(tags_response), summary=summary)
