"""Describe code chunks with an LLM and embed them for semantic search."""

from __future__ import annotations

import logging

from reposync.provider import EmbeddingProvider, GenerationProvider, ProviderError
from reposync.storage.sqlite_store import CodeChunk
from reposync.workflow import batching

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a code documentation assistant. "
    "Given a code snippet, write a brief 1-2 sentence description of what it does. "
    "Be concise and specific."
)

# Gemini allows up to 250 texts per request; chunks of one file rarely exceed this.
DEFAULT_BATCH_SIZE = 20

MAX_DESCRIBE_CHARS = 2_000
MAX_EMBED_CODE_CHARS = 1_000


def embedding_text(chunk: CodeChunk) -> str:
    return f"{chunk.name}: {chunk.docstring}\n\n{chunk.code[:MAX_EMBED_CODE_CHARS]}"


class ChunkEmbedder:
    """Fills in chunk docstrings and returns one vector per chunk."""

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        generation_provider: GenerationProvider | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._embedding_provider = embedding_provider
        self._generation_provider = generation_provider
        self._batch_size = batch_size

    def describe(self, chunk: CodeChunk) -> str:
        """One or two sentences about a chunk, or ``"<language> code"`` if unavailable."""
        fallback = f"{chunk.language} code"
        if self._generation_provider is None:
            return fallback
        prompt = f"```{chunk.language}\n{chunk.code[:MAX_DESCRIBE_CHARS]}\n```"
        try:
            text = self._generation_provider.generate(prompt, system=SYSTEM_PROMPT)
        except ProviderError as e:
            logger.debug("Describe failed for %s:%s: %s", chunk.file_path, chunk.name, e)
            return fallback
        return text.strip() or fallback

    def embed_chunks(self, chunks: list[CodeChunk]) -> list[list[float]]:
        """Describe every chunk in place, then embed them in provider-sized batches."""
        for chunk in chunks:
            if not chunk.docstring:
                chunk.docstring = self.describe(chunk)

        vectors: list[list[float]] = []
        for batch in batching.chunk(chunks, self._batch_size):
            vectors.extend(self._embedding_provider.embed([embedding_text(c) for c in batch]))
        return vectors

    def embed_query(self, text: str) -> list[float]:
        return self._embedding_provider.embed([text])[0]
