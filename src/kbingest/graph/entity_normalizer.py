"""
Alias normalization of extracted entities.

Extractors spell the same entity several ways within one reply ("Acme
Corp", "ACME Corporation", "Acme Corp."). Before upserting, each name is
reduced to a comparison key and mapped to one canonical label, either from
a configured alias table or the first spelling seen. Graph nodes sharing a
canonical type and key collapse into one node, and edges are rewired to the
surviving label.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.graph_models import ExtractedEdge, ExtractedNode, ExtractionResult
from .normalization import canonicalize_label, merge_properties, normalize_node_type

logger = logging.getLogger(__name__)

CORPORATE_SUFFIXES = frozenset(
    {"inc", "incorporated", "corp", "corporation", "co", "company", "ltd", "limited", "llc", "plc", "gmbh", "ag", "sa"}
)

PUNCTUATION = re.compile(r"[^\w\s#@]")


def entity_key(label: Optional[str]) -> str:
    """
    Comparison key of an entity name.

    Case, punctuation, repeated whitespace and trailing corporate suffixes
    are ignored. A name made only of suffixes keeps them.
    """
    words = PUNCTUATION.sub(" ", canonicalize_label(label).casefold()).split()
    trimmed = list(words)
    while len(trimmed) > 1 and trimmed[-1] in CORPORATE_SUFFIXES:
        trimmed.pop()
    return " ".join(trimmed)


class EntityNormalizer:
    """Maps entity spellings onto canonical labels."""

    def __init__(self, aliases: Optional[Dict[str, Iterable[str]]] = None):
        self._canonical_by_key: Dict[str, str] = {}
        for canonical, names in (aliases or {}).items():
            self.add_alias(canonical, *names)

    def add_alias(self, canonical: str, *aliases: str) -> None:
        """Register ``aliases`` (and the canonical name itself) for ``canonical``."""
        canonical = canonicalize_label(canonical)
        for name in (canonical, *aliases):
            key = entity_key(name)
            if key:
                self._canonical_by_key[key] = canonical

    def canonical_label(self, label: str) -> str:
        """Configured canonical name of ``label``, or the trimmed label itself."""
        return self._canonical_by_key.get(entity_key(label), canonicalize_label(label))

    def normalize_labels(self, labels: Iterable[str]) -> List[str]:
        """Canonical names in first-seen order, one per key."""
        seen = set()
        normalized: List[str] = []
        for label in labels:
            canonical = self.canonical_label(label)
            key = entity_key(canonical)
            if not key or key in seen:
                continue
            seen.add(key)
            normalized.append(canonical)
        return normalized

    def normalize_extraction(self, extraction: ExtractionResult) -> ExtractionResult:
        """
        Collapse alias nodes of one extraction and rewire its edges.

        Nodes are grouped by canonical node type and entity key. The first
        node of a group survives under its canonical label, absorbs the
        properties of the others and lists their spellings under
        ``aliases``. Edge endpoints naming a collapsed node, by label or id,
        are rewritten to the surviving label.
        """
        survivors: Dict[Tuple[str, str], ExtractedNode] = {}
        spellings: Dict[Tuple[str, str], List[str]] = {}
        renamed: Dict[str, str] = {}
        nodes: List[ExtractedNode] = []

        for node in extraction.nodes:
            label = node.resolved_label
            canonical = self.canonical_label(label)
            key = entity_key(canonical)
            if not key:
                nodes.append(node)
                continue

            group = (normalize_node_type(node.type).value, key)
            survivor = survivors.get(group)
            if survivor is None:
                survivor = node.model_copy(update={"label": canonical, "properties": dict(node.properties)})
                survivors[group] = survivor
                spellings[group] = []
                nodes.append(survivor)
            else:
                survivor.properties = merge_properties(survivor.properties, node.properties)

            if label != survivor.label and label not in spellings[group]:
                spellings[group].append(label)
            renamed[label] = survivor.label
            if node.id and node.id.strip():
                renamed.setdefault(node.id.strip(), survivor.label)

        for group, names in spellings.items():
            if names:
                survivors[group].properties["aliases"] = names

        edges = [self._rewire(edge, renamed) for edge in extraction.edges]

        collapsed = len(extraction.nodes) - len(nodes)
        if collapsed:
            logger.debug(f"Collapsed {collapsed} alias nodes into {len(nodes)} nodes")
        return ExtractionResult(nodes=nodes, edges=edges)

    def _rewire(self, edge: ExtractedEdge, renamed: Dict[str, str]) -> ExtractedEdge:
        update: Dict[str, Any] = {}
        for end in ("source", "target"):
            value = canonicalize_label(getattr(edge, end))
            if value in renamed:
                update[end] = renamed[value]
        return edge.model_copy(update=update) if update else edge
