"""
Deterministic recursive character chunking.

Identical content and configuration always yield identical segment
boundaries, which is what makes re-chunking on resume safe.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import tiktoken

from ..models.document_models import Document, Segment, content_hash, segment_id_for
from ..models.errors import ValidationError

logger = logging.getLogger(__name__)

# Preferred split points, strongest first
SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " "]

TokenCounter = Callable[[str], int]


class ChunkingEngine:
    """
    Recursive character splitter with word-aligned overlap.

    Each window of ``chunk_size`` characters is cut at the strongest
    separator whose last occurrence lies in the second half of the window,
    or hard-cut when none does. The next window starts ``chunk_overlap``
    characters before the cut, moved forward to the next word boundary.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        token_counter: Optional[TokenCounter] = None,
        tokenizer_model: str = "cl100k_base",
    ):
        """
        Initialize the chunking engine.

        Args:
            chunk_size: Target segment size in characters
            chunk_overlap: Characters shared by consecutive segments
            token_counter: Counts tokens of a segment, tiktoken when omitted
            tokenizer_model: tiktoken encoding used by the default counter
        """
        if chunk_size <= 0:
            raise ValidationError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValidationError(
                f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap}"
            )

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.tokenizer_model = tokenizer_model
        self._token_counter = token_counter
        self._tokenizer = None

        logger.debug(f"Chunking engine initialized (size: {chunk_size}, overlap: {chunk_overlap})")

    def count_tokens(self, text: str) -> int:
        if self._token_counter is not None:
            return self._token_counter(text)

        if self._tokenizer is None:
            self._tokenizer = tiktoken.get_encoding(self.tokenizer_model)
        return len(self._tokenizer.encode(text))

    def split_text(self, text: str) -> List[str]:
        """Split text into ordered chunks."""
        chunks: List[str] = []
        length = len(text)
        start = 0

        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                cut = self._find_break(text[start:end])
                if cut is not None:
                    end = start + cut

            piece = text[start:end].strip()
            if piece:
                chunks.append(piece)

            if end >= length:
                break

            start = self._next_start(text, start, end)

        return chunks

    def _find_break(self, window: str) -> Optional[int]:
        midpoint = len(window) // 2
        for separator in SEPARATORS:
            index = window.rfind(separator)
            if index != -1 and index + len(separator) > midpoint:
                return index + len(separator)
        return None

    def _next_start(self, text: str, start: int, end: int) -> int:
        next_start = max(end - self.chunk_overlap, start + 1)

        # Move forward to the start of a word
        while next_start < end and not text[next_start - 1].isspace():
            next_start += 1
        return next_start

    def create_segments(self, document: Document) -> List[Segment]:
        """
        Chunk a document into segments.

        Args:
            document: Document whose content is split

        Returns:
            Segments with positions 0..n-1

        Raises:
            ValidationError: Content is empty
        """
        if not document.content or not document.content.strip():
            raise ValidationError(f"Document {document.id} has no content to chunk")

        segments = []
        for position, piece in enumerate(self.split_text(document.content)):
            digest = content_hash(piece)
            segments.append(
                Segment(
                    id=segment_id_for(document.id, position, digest),
                    document_id=document.id,
                    position=position,
                    content=piece,
                    word_count=len(piece.split()),
                    token_count=self.count_tokens(piece),
                    content_hash=digest,
                )
            )

        logger.info(f"Chunked document {document.id} into {len(segments)} segments")
        return segments

    def get_chunking_statistics(self) -> Dict[str, Any]:
        return {
            "chunk_size": self.chunk_size,
            "chunk_overlap": self.chunk_overlap,
            "tokenizer_model": self.tokenizer_model,
            "separators": list(SEPARATORS),
        }
