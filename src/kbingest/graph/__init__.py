"""
Knowledge graph normalization, response parsing and deduplicating upserts.
"""

from .entity_normalizer import EntityNormalizer, entity_key
from .graph_builder import GraphBuilder, UpsertResult
from .normalization import (
    canonicalize_label,
    merge_properties,
    normalize_edge_type,
    normalize_node_type,
    reinforce_weight,
)
from .response_parser import (
    extract_json_payload,
    parse_extraction,
    parse_structured_text,
    register_provider,
)

__all__ = [
    "EntityNormalizer",
    "entity_key",
    "GraphBuilder",
    "UpsertResult",
    "canonicalize_label",
    "merge_properties",
    "normalize_edge_type",
    "normalize_node_type",
    "reinforce_weight",
    "extract_json_payload",
    "parse_extraction",
    "parse_structured_text",
    "register_provider",
]
