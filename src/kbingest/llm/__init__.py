"""
LLM capability used by the graph extraction stage.
"""

from .extraction_client import ExtractionClient, HttpExtractionClient, build_messages

__all__ = ["ExtractionClient", "HttpExtractionClient", "build_messages"]
