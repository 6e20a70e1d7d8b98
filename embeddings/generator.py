"""
Embedding Generator
Converts text to vector embeddings using OpenAI text-embedding-3-small

Calls go through the CompletionClient so embeddings share the credential
pool (and its rotation) with chat completions.
"""

from typing import List, Optional
from tqdm import tqdm

from generation.completion_client import CompletionClient, get_completion_client


class EmbeddingGenerator:
    """
    Generate embeddings for text

    Model: text-embedding-3-small (EMBEDDING_MODEL env var)
    - Dimensions: 1536 (EMBEDDING_DIM env var)
    """

    def __init__(self, client: Optional[CompletionClient] = None):
        self.client = client or get_completion_client()
        self.model_name = self.client.config.embedding_model
        self.embedding_dim = self.client.config.embedding_dim

    async def generate_embedding(self, text: str) -> List[float]:
        """
        Generate embedding for a single text

        Args:
            text: Input text

        Returns:
            List of floats (embedding vector)
        """
        return await self.client.embed(text)

    async def generate_embeddings_batch(
        self,
        texts: List[str],
        batch_size: int = 100,
        show_progress: bool = True,
    ) -> List[List[float]]:
        """
        Generate embeddings for multiple texts (batched for efficiency)

        OpenAI accepts up to 2048 inputs per request; smaller batches keep a
        single failure cheap and give progress feedback on large uploads.
        Errors propagate: a chunk is never stored with a placeholder vector.
        """
        if not texts:
            return []

        batches = [texts[i:i + batch_size] for i in range(0, len(texts), batch_size)]
        iterator = tqdm(batches, desc="Embedding batches") if show_progress and len(batches) > 1 else batches

        all_embeddings: List[List[float]] = []
        for batch in iterator:
            all_embeddings.extend(await self.client.embed_many(batch))
        return all_embeddings


# Singleton instance for reuse
_embedding_generator: Optional[EmbeddingGenerator] = None


def get_embedding_generator() -> EmbeddingGenerator:
    """
    Get singleton embedding generator instance
    Lazy initialization - client created on first call
    """
    global _embedding_generator
    if _embedding_generator is None:
        _embedding_generator = EmbeddingGenerator()
    return _embedding_generator
