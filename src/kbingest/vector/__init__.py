"""
Embedding capability used by the embedding stage.
"""

from .embedding_client import EmbeddingClient, HttpEmbeddingClient

__all__ = ["EmbeddingClient", "HttpEmbeddingClient"]
