"""
Normalization of extracted graph types and labels.

Free-form types returned by the extractor are mapped through fixed synonym
tables onto the canonical NodeType / EdgeType enums. Unknown types fall back
to a default rather than failing the segment.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from ..models.graph_models import EdgeType, NodeType

logger = logging.getLogger(__name__)

DEFAULT_NODE_TYPE = NodeType.ORGANIZATION
DEFAULT_EDGE_TYPE = EdgeType.RELATED_TO

NODE_TYPE_SYNONYMS: Dict[str, NodeType] = {
    **{node_type.value: node_type for node_type in NodeType},
    "people": NodeType.PERSON,
    "individual": NodeType.PERSON,
    "user": NodeType.PERSON,
    "company": NodeType.ORGANIZATION,
    "org": NodeType.ORGANIZATION,
    "service": NodeType.ORGANIZATION,
    "credit_card": NodeType.PRODUCT,
    "place": NodeType.LOCATION,
    "city": NodeType.LOCATION,
    "country": NodeType.LOCATION,
    "tag": NodeType.HASHTAG,
    "subject": NodeType.TOPIC,
}

EDGE_TYPE_SYNONYMS: Dict[str, EdgeType] = {
    **{edge_type.value: edge_type for edge_type in EdgeType},
    "offers": EdgeType.RELATED_TO,
    "used_for": EdgeType.RELATED_TO,
    "uses_hashtag": EdgeType.RELATED_TO,
    "mentioned_in": EdgeType.MENTIONS,
    "competitor_of": EdgeType.COMPETES_WITH,
    "works_with": EdgeType.COLLABORATES,
    "member_of": EdgeType.PART_OF,
    "belongs_to": EdgeType.PART_OF,
    "based_in": EdgeType.LOCATED_IN,
}


def _type_key(raw_type: Optional[str]) -> str:
    return (raw_type or "").strip().lower().replace("-", "_").replace(" ", "_")


def normalize_node_type(raw_type: Optional[str]) -> NodeType:
    """Map a raw node type onto NodeType, defaulting to organization."""
    node_type = NODE_TYPE_SYNONYMS.get(_type_key(raw_type))
    if node_type is None:
        logger.debug(f"Unknown node type {raw_type!r}, using {DEFAULT_NODE_TYPE.value}")
        return DEFAULT_NODE_TYPE
    return node_type


def normalize_edge_type(raw_type: Optional[str]) -> EdgeType:
    """Map a raw edge type onto EdgeType, defaulting to related_to."""
    edge_type = EDGE_TYPE_SYNONYMS.get(_type_key(raw_type))
    if edge_type is None:
        logger.debug(f"Unknown edge type {raw_type!r}, using {DEFAULT_EDGE_TYPE.value}")
        return DEFAULT_EDGE_TYPE
    return edge_type


def is_remapped(raw_type: Optional[str], canonical: Enum) -> bool:
    """Whether a non-empty raw type differs from the canonical type it maps to."""
    return bool(raw_type and raw_type.strip()) and _type_key(raw_type) != canonical.value


def canonicalize_label(label: Optional[str]) -> str:
    """Trim surrounding whitespace. Case and inner spacing are preserved."""
    return (label or "").strip()


def merge_properties(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """New non-null values overwrite, everything else is retained."""
    merged = dict(existing)
    for key, value in incoming.items():
        if value is not None:
            merged[key] = value
    return merged


def clamp_weight(weight: Optional[float]) -> Optional[float]:
    if weight is None:
        return None
    return max(0.0, min(1.0, float(weight)))


def reinforce_weight(existing: Optional[float], incoming: Optional[float]) -> Optional[float]:
    """Combined weight of a re-extracted edge: the larger of the two, clamped to [0, 1]."""
    candidates = [w for w in (clamp_weight(existing), clamp_weight(incoming)) if w is not None]
    return max(candidates) if candidates else None
