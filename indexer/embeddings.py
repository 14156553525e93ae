# docfeed embeddings module
# Dense vectors from the model runner, plus client-side rank fusion

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import aiohttp

from config.settings import EmbeddingsConfig
from pipelines.errors import ModelError
from .model_runner import ModelRunnerClient

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 20000
DEFAULT_DIMENSIONS = 768

MODEL_DIMENSIONS = {
    "ai/embeddinggemma": 768,
    "ai/snowflake-arctic-embed": 1024,
    "ai/qwen3-embedding": 2560,
}


def embedding_dimensions(model: str) -> int:
    """Expected vector width for a known model; 768 for anything else."""
    return MODEL_DIMENSIONS.get(model, DEFAULT_DIMENSIONS)


class EmbeddingClient(ModelRunnerClient):
    """Client for the runner's ``/embeddings`` endpoint."""

    def __init__(self, config: EmbeddingsConfig, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(
            socket_path=config.socket_path,
            model=config.model,
            base_url=config.base_url,
            timeout=config.timeout,
            session=session,
        )
        self.max_input_chars = config.max_input_chars or MAX_INPUT_CHARS

    @property
    def dimensions(self) -> int:
        return embedding_dimensions(self.model)

    async def embed(self, text: str) -> List[float]:
        """Embed ``text``, truncating it to ``max_input_chars`` first.

        Raises:
            ModelError: on any transport or API failure, or an empty result
        """
        original_len = len(text)
        if len(text) > self.max_input_chars:
            text = text[:self.max_input_chars]
        logger.debug(f"Generating embedding (original_len={original_len}, truncated_len={len(text)})")

        data = await self._post_json("embeddings", {"model": self.model, "input": text})
        items = data.get("data") or []
        if not isinstance(items, list) or not items:
            raise ModelError("no embedding returned")
        item = items[0]
        if not isinstance(item, dict):
            raise ModelError("unexpected response shape: embedding item is not an object")
        vector = item.get("embedding")
        if not vector:
            raise ModelError("no embedding returned")
        if not isinstance(vector, list):
            raise ModelError("unexpected response shape: embedding is not a list")
        try:
            return [float(v) for v in vector]
        except (TypeError, ValueError) as e:
            raise ModelError(f"embedding contains non-numeric values: {e}") from e


def reciprocal_rank_fusion(rankings: Iterable[Sequence[str]], k: int = 60) -> List[Tuple[str, float]]:
    """Combine ranked ID lists using Reciprocal Rank Fusion (RRF).

    Each list contributes ``1 / (k + rank)`` for every ID it contains
    (ranks start at 1). Ties keep first-seen order.

    Args:
        rankings: Ranked ID lists, best first
        k: RRF parameter (typically 60)

    Returns:
        (id, score) pairs, highest score first
    """
    scores: Dict[str, float] = {}
    for ranking in rankings:
        for rank, doc_id in enumerate(ranking, start=1):
            scores[doc_id] = scores.get(doc_id, 0.0) + 1.0 / (k + rank)

    fused = list(scores.items())
    # Sort by RRF score (descending); sort is stable for ties
    fused.sort(key=lambda x: x[1], reverse=True)
    return fused
