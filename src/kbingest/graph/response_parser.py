"""
Provider response normalization for graph extraction.

Each provider returns its completion in a different envelope. One
normalizer per provider id pulls out the completion content; every variant
then converges on the same validated ExtractionResult.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..models.errors import MalformedResponseError
from ..models.graph_models import ExtractionResult, ProviderResponse

logger = logging.getLogger(__name__)

FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def _openai_content(payload: Dict[str, Any]) -> Any:
    return payload["choices"][0]["message"]["content"]


def _ollama_content(payload: Dict[str, Any]) -> Any:
    if "message" in payload:
        return payload["message"]["content"]
    return payload["response"]


def _dashscope_content(payload: Dict[str, Any]) -> Any:
    output = payload["output"]
    if output.get("choices"):
        return output["choices"][0]["message"]["content"]
    return output["text"]


def _raw_content(payload: Any) -> Any:
    return payload


PROVIDER_NORMALIZERS: Dict[str, Callable[[Any], Any]] = {
    "openai": _openai_content,
    "openrouter": _openai_content,
    "ollama": _ollama_content,
    "dashscope": _dashscope_content,
    "raw": _raw_content,
}


def register_provider(provider: str, normalizer: Callable[[Any], Any]) -> None:
    """Add or replace the normalizer for a provider id."""
    PROVIDER_NORMALIZERS[provider.lower()] = normalizer


def extract_completion(response: ProviderResponse, unit_id: Optional[str] = None) -> Any:
    """Pull the completion content out of a provider envelope."""
    normalizer = PROVIDER_NORMALIZERS.get(response.provider.lower())
    if normalizer is None:
        raise MalformedResponseError(
            f"No response normalizer for provider {response.provider!r}",
            unit_id=unit_id,
        )

    try:
        return normalizer(response.payload)
    except (KeyError, IndexError, TypeError, AttributeError) as e:
        raise MalformedResponseError(
            f"Unexpected {response.provider} response shape: {e!r}",
            unit_id=unit_id,
            raw_content=_preview(response.payload),
        ) from e


def extract_json_payload(text: str, unit_id: Optional[str] = None) -> Any:
    """
    Parse JSON from model output.

    Accepts bare JSON, JSON inside a markdown fence, or JSON surrounded by
    prose (the outermost ``{...}`` or ``[...]`` span is used).
    """
    candidates = []

    fenced = FENCED_BLOCK.search(text)
    if fenced:
        candidates.append(fenced.group(1))

    stripped = text.strip()
    candidates.append(stripped)

    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = stripped.find(opener), stripped.rfind(closer)
        if start != -1 and end > start:
            candidates.append(stripped[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise MalformedResponseError(
        "No valid JSON found in extraction response",
        unit_id=unit_id,
        raw_content=_preview(text),
    )


# Headings of bulleted sections in free-text replies, mapped to a node type
# or to "relationships"
TEXT_SECTIONS: Dict[str, str] = {
    "entities": "organization",
    "organizations": "organization",
    "companies": "organization",
    "banks and financial institutions": "organization",
    "products": "product",
    "products and services": "product",
    "people": "person",
    "persons": "person",
    "users": "person",
    "topics": "topic",
    "events": "event",
    "locations": "location",
    "places": "location",
    "hashtags": "hashtag",
    "relationships": "relationships",
    "relations": "relationships",
    "interactions": "relationships",
}

BULLET = re.compile(r"^(?:[*\-•]|\d+[.)])\s+(.+?)$")
TRAILING_PARENS = re.compile(r"^(.+?)\s*\(([^()]+)\)$")
ARROW = re.compile(r"\s*(?:->|→)\s*")

TEXT_NODE_CONFIDENCE = 0.8
TEXT_EDGE_CONFIDENCE = 0.7


def _section_heading(line: str) -> Optional[str]:
    if BULLET.match(line):
        return None
    heading = line.strip("#* \t")
    if heading.endswith(":"):
        heading = heading[:-1].strip("* ")
    elif not line.startswith(("#", "**")):
        return None
    return heading.lower()


def _split_parens(item: str) -> Tuple[str, Optional[str]]:
    match = TRAILING_PARENS.match(item)
    if match:
        return match.group(1).strip(), match.group(2).strip()
    return item.strip(), None


def _relationship_edges(item: str) -> List[Dict[str, Any]]:
    body, detail = _split_parens(item)

    if "|" in body:
        parts = [p.strip() for p in body.split("|")]
        if len(parts) == 3 and all(parts):
            return [{
                "source": parts[0],
                "target": parts[2],
                "type": parts[1],
                "properties": {"confidence": TEXT_EDGE_CONFIDENCE},
            }]
        return []

    endpoints = [p.strip() for p in ARROW.split(body)]
    if len(endpoints) == 2 and all(endpoints):
        return [{
            "source": endpoints[0],
            "target": endpoints[1],
            "type": detail or "related_to",
            "properties": {"confidence": TEXT_EDGE_CONFIDENCE},
        }]

    # "A, B, C (context)" relates every pair of the listed entities
    labels = [p.strip() for p in body.split(",") if p.strip()]
    properties: Dict[str, Any] = {"confidence": TEXT_EDGE_CONFIDENCE}
    if detail:
        properties["context"] = detail
    return [
        {"source": a, "target": b, "type": "related_to", "properties": dict(properties)}
        for i, a in enumerate(labels)
        for b in labels[i + 1:]
    ]


def parse_structured_text(text: str) -> Optional[Dict[str, Any]]:
    """
    Read a {nodes, edges} payload from a bulleted free-text reply.

    Models sometimes ignore the JSON instruction and answer with headed
    bullet lists::

        **Entities:**
        * Acme Bank (retail bank)
        **Products and Services:**
        * Gold Card
        **Relationships:**
        * Acme Bank -> Gold Card (offers)
        * Acme Bank | competes_with | Globex
        * Acme Bank, Globex (both issue cards)

    Entity bullets become nodes typed by their section, with the trailing
    parenthesis kept as ``description``. Relationship bullets become edges.

    Returns:
        The payload, or None when the text holds no recognisable bullets
    """
    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []
    section: Optional[str] = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        heading = _section_heading(line)
        if heading is not None:
            section = TEXT_SECTIONS.get(heading)
            continue

        bullet = BULLET.match(line)
        if bullet is None or section is None:
            continue
        item = bullet.group(1).replace("**", "").strip()

        if section == "relationships":
            edges.extend(_relationship_edges(item))
            continue

        label, description = _split_parens(item)
        if not label:
            continue
        properties: Dict[str, Any] = {"confidence": TEXT_NODE_CONFIDENCE}
        if description:
            properties["description"] = description
        nodes.append({"type": section, "label": label, "properties": properties})

    if not nodes and not edges:
        return None
    return {"nodes": nodes, "edges": edges}


def _parse_text(text: str, unit_id: Optional[str]) -> Any:
    try:
        return extract_json_payload(text, unit_id)
    except MalformedResponseError:
        data = parse_structured_text(text)
        if data is None:
            raise
        logger.info(
            f"Extraction reply for {unit_id} was not JSON, read "
            f"{len(data['nodes'])} nodes and {len(data['edges'])} edges from structured text"
        )
        return data


def parse_extraction(response: ProviderResponse, unit_id: Optional[str] = None) -> ExtractionResult:
    """
    Normalize and validate an extraction response.

    Text replies without JSON fall back to ``parse_structured_text``.

    Args:
        response: Provider-tagged raw response
        unit_id: Segment id reported in errors

    Returns:
        Validated {nodes, edges} payload

    Raises:
        MalformedResponseError: Envelope, JSON or schema is invalid
    """
    content = extract_completion(response, unit_id)

    if isinstance(content, (str, bytes)):
        text = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
        data = _parse_text(text, unit_id)
    else:
        data = content

    if isinstance(data, list):
        data = {"nodes": data, "edges": []}

    if not isinstance(data, dict) or not ("nodes" in data or "edges" in data):
        raise MalformedResponseError(
            "Extraction payload must be an object with nodes and edges",
            unit_id=unit_id,
            raw_content=_preview(data),
        )

    data = {"nodes": data.get("nodes") or [], "edges": data.get("edges") or []}

    try:
        result = ExtractionResult.model_validate(data)
    except PydanticValidationError as e:
        raise MalformedResponseError(
            f"Extraction payload failed validation: {e.error_count()} errors",
            unit_id=unit_id,
            raw_content=_preview(data),
        ) from e

    logger.debug(
        f"Parsed extraction for {unit_id}: {len(result.nodes)} nodes, {len(result.edges)} edges"
    )
    return result


def _preview(value: Any, limit: int = 500) -> str:
    text = value if isinstance(value, str) else repr(value)
    return text[:limit]
