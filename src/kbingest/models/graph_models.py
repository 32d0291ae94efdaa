"""
Knowledge graph data models.

Stored rows (GraphNode, GraphEdge) are plain dataclasses. The raw payload
returned by an extraction provider is validated with pydantic models that
accept the field aliases seen across providers.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class NodeType(Enum):
    """Canonical node types."""

    PERSON = "person"
    ORGANIZATION = "organization"
    PRODUCT = "product"
    TOPIC = "topic"
    EVENT = "event"
    LOCATION = "location"
    AUTHOR = "author"
    BRAND = "brand"
    HASHTAG = "hashtag"
    INFLUENCER = "influencer"


class EdgeType(Enum):
    """Canonical edge types."""

    MENTIONS = "mentions"
    RELATED_TO = "related_to"
    INFLUENCES = "influences"
    COMPETES_WITH = "competes_with"
    DISCUSSES = "discusses"
    SHARES_TOPIC = "shares_topic"
    FOLLOWS = "follows"
    COLLABORATES = "collaborates"
    INTERACTS_WITH = "interacts_with"
    SENTIMENT = "sentiment"
    LOCATED_IN = "located_in"
    PART_OF = "part_of"


@dataclass
class GraphNode:
    """A deduplicated entity, unique on (dataset_id, node_type, label)."""

    dataset_id: str
    node_type: NodeType
    label: str
    document_id: Optional[str] = None
    segment_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def natural_key(self) -> tuple:
        return (self.dataset_id, self.node_type.value, self.label)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dataset_id": self.dataset_id,
            "document_id": self.document_id,
            "segment_id": self.segment_id,
            "node_type": self.node_type.value,
            "label": self.label,
            "properties": dict(self.properties),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class GraphEdge:
    """A directed relationship, unique on (dataset_id, source, target, edge_type)."""

    dataset_id: str
    source_node_id: str
    target_node_id: str
    edge_type: EdgeType
    weight: Optional[float] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def natural_key(self) -> tuple:
        return (
            self.dataset_id,
            self.source_node_id,
            self.target_node_id,
            self.edge_type.value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dataset_id": self.dataset_id,
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
            "edge_type": self.edge_type.value,
            "weight": self.weight,
            "properties": dict(self.properties),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class ExtractedNode(BaseModel):
    """Node as returned by the extraction provider, before normalization."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str = Field(
        default="",
        validation_alias=AliasChoices("type", "nodeType", "node_type"),
    )
    label: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v):
        return "" if v is None else str(v)

    @field_validator("properties", mode="before")
    @classmethod
    def coerce_properties(cls, v):
        return v if isinstance(v, dict) else {}

    @property
    def resolved_label(self) -> str:
        """Trimmed label, falling back to the node id."""
        return (self.label or self.id or "").strip()


class ExtractedEdge(BaseModel):
    """Edge as returned by the extraction provider, before normalization."""

    model_config = ConfigDict(extra="ignore")

    source: str = Field(
        default="",
        validation_alias=AliasChoices("sourceNodeLabel", "source", "from", "source_node_label"),
    )
    target: str = Field(
        default="",
        validation_alias=AliasChoices("targetNodeLabel", "target", "to", "target_node_label"),
    )
    type: str = Field(
        default="",
        validation_alias=AliasChoices("type", "edgeType", "edge_type"),
    )
    weight: Optional[float] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("source", "target", "type", mode="before")
    @classmethod
    def coerce_str(cls, v):
        return "" if v is None else str(v)

    @field_validator("weight", mode="before")
    @classmethod
    def coerce_weight(cls, v):
        try:
            return None if v is None else float(v)
        except (TypeError, ValueError):
            return None

    @field_validator("properties", mode="before")
    @classmethod
    def coerce_properties(cls, v):
        return v if isinstance(v, dict) else {}


class ExtractionResult(BaseModel):
    """Canonical {nodes, edges} payload shared by every provider."""

    nodes: List[ExtractedNode] = Field(default_factory=list)
    edges: List[ExtractedEdge] = Field(default_factory=list)


@dataclass
class ProviderResponse:
    """Raw response of an extraction call, tagged by provider id."""

    provider: str
    payload: Any
