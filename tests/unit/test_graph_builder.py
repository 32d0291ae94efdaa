"""
Unit tests for deduplicating graph upserts.
"""

import asyncio

import pytest

from kbingest.graph.graph_builder import GraphBuilder
from kbingest.models.graph_models import (
    EdgeType,
    ExtractionResult,
    GraphEdge,
    GraphNode,
    NodeType,
)
from kbingest.storage.memory_store import InMemoryGraphStore


def extraction(nodes=None, edges=None) -> ExtractionResult:
    return ExtractionResult.model_validate({"nodes": nodes or [], "edges": edges or []})


class RacingGraphStore(InMemoryGraphStore):
    """Reports no existing row once, so the builder's insert collides."""

    def __init__(self):
        super().__init__()
        self.hide_next_node = False
        self.hide_next_edge = False

    async def find_node(self, dataset_id, node_type, label):
        if self.hide_next_node:
            self.hide_next_node = False
            return None
        return await super().find_node(dataset_id, node_type, label)

    async def find_edge(self, dataset_id, source_node_id, target_node_id, edge_type):
        if self.hide_next_edge:
            self.hide_next_edge = False
            return None
        return await super().find_edge(dataset_id, source_node_id, target_node_id, edge_type)


@pytest.fixture
def builder(graph_store):
    return GraphBuilder(graph_store)


class TestNodeUpsert:
    """Test node deduplication on (dataset, type, label)."""

    @pytest.mark.asyncio
    async def test_same_entity_twice_gives_one_node(self, builder, graph_store):
        payload = extraction(nodes=[{"type": "organization", "label": "Acme Corp"}])

        first = await builder.upsert_segment_graph("ds", "doc-1", "seg-1", payload)
        second = await builder.upsert_segment_graph("ds", "doc-1", "seg-2", payload)

        nodes = await graph_store.list_nodes("ds")
        assert len(nodes) == 1
        assert (first.nodes_created, second.nodes_created, second.nodes_merged) == (1, 0, 1)
        assert nodes[0].segment_id == "seg-1"

    @pytest.mark.asyncio
    async def test_synonym_types_merge(self, builder, graph_store):
        await builder.upsert_segment_graph(
            "ds", "doc-1", "seg-1", extraction(nodes=[{"type": "company", "label": "Acme"}])
        )
        await builder.upsert_segment_graph(
            "ds", "doc-1", "seg-2", extraction(nodes=[{"type": "organization", "label": "Acme"}])
        )

        nodes = await graph_store.list_nodes("ds")
        assert len(nodes) == 1
        assert nodes[0].node_type == NodeType.ORGANIZATION
        assert nodes[0].properties["original_type"] == "company"

    @pytest.mark.asyncio
    async def test_labels_differing_in_case_stay_distinct(self, builder, graph_store):
        await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(nodes=[{"type": "person", "label": "jane"}, {"type": "person", "label": " Jane "}]),
        )

        labels = sorted(n.label for n in await graph_store.list_nodes("ds"))
        assert labels == ["Jane", "jane"]

    @pytest.mark.asyncio
    async def test_datasets_are_isolated(self, builder, graph_store):
        payload = extraction(nodes=[{"type": "person", "label": "Jane"}])

        await builder.upsert_segment_graph("ds-a", "doc-1", "seg-1", payload)
        await builder.upsert_segment_graph("ds-b", "doc-2", "seg-1", payload)

        assert len(await graph_store.list_nodes("ds-a")) == 1
        assert len(await graph_store.list_nodes("ds-b")) == 1

    @pytest.mark.asyncio
    async def test_nodes_without_label_are_skipped(self, builder, graph_store):
        result = await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(nodes=[{"type": "person", "label": "  "}, {"id": "acme", "type": "org"}]),
        )

        nodes = await graph_store.list_nodes("ds")
        assert result.nodes_created == 1
        assert nodes[0].label == "acme"

    @pytest.mark.asyncio
    async def test_properties_merge_on_reextraction(self, builder, graph_store):
        await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(nodes=[{"type": "person", "label": "Jane", "properties": {"role": "cto", "age": 40}}]),
        )
        await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-2",
            extraction(nodes=[{"type": "person", "label": "Jane", "properties": {"role": "ceo", "age": None}}]),
        )

        node = (await graph_store.list_nodes("ds"))[0]
        assert node.properties == {"role": "ceo", "age": 40}


class TestEdgeUpsert:
    """Test edge deduplication and weight reinforcement."""

    NODES = [
        {"id": "jane", "type": "person", "label": "Jane"},
        {"id": "acme", "type": "organization", "label": "Acme"},
    ]

    @pytest.mark.asyncio
    async def test_edge_resolves_labels_and_ids(self, builder, graph_store):
        result = await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(
                nodes=self.NODES,
                edges=[
                    {"source": "Jane", "target": "Acme", "type": "works_with"},
                    {"source": "jane", "target": "acme", "type": "mentions"},
                ],
            ),
        )

        edges = await graph_store.list_edges("ds")
        assert result.edges_created == 2
        assert {e.edge_type for e in edges} == {EdgeType.COLLABORATES, EdgeType.MENTIONS}
        by_type = {e.edge_type: e for e in edges}
        assert by_type[EdgeType.COLLABORATES].properties["original_type"] == "works_with"
        assert "original_type" not in by_type[EdgeType.MENTIONS].properties

    @pytest.mark.asyncio
    async def test_edge_with_unknown_endpoint_is_dropped(self, builder, graph_store):
        result = await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(nodes=self.NODES, edges=[{"source": "Jane", "target": "Globex", "type": "mentions"}]),
        )

        assert result.edges_dropped == 1
        assert await graph_store.list_edges("ds") == []

    @pytest.mark.asyncio
    async def test_reextracted_edge_keeps_max_weight(self, builder, graph_store):
        for weight in (0.2, 0.4, 0.3):
            await builder.upsert_segment_graph(
                "ds",
                "doc-1",
                "seg-1",
                extraction(
                    nodes=self.NODES,
                    edges=[{"source": "Jane", "target": "Acme", "type": "collaborates", "weight": weight}],
                ),
            )

        edges = await graph_store.list_edges("ds")
        assert len(edges) == 1
        assert edges[0].weight == 0.4

    @pytest.mark.asyncio
    async def test_missing_weight_defaults_to_one(self, builder, graph_store):
        await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(nodes=self.NODES, edges=[{"source": "Jane", "target": "Acme", "type": "mentions"}]),
        )

        assert (await graph_store.list_edges("ds"))[0].weight == 1.0

    @pytest.mark.asyncio
    async def test_direction_matters(self, builder, graph_store):
        await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(
                nodes=self.NODES,
                edges=[
                    {"source": "Jane", "target": "Acme", "type": "mentions"},
                    {"source": "Acme", "target": "Jane", "type": "mentions"},
                ],
            ),
        )

        assert len(await graph_store.list_edges("ds")) == 2


class TestConcurrentUpserts:
    """Test that insert collisions are absorbed by merging."""

    @pytest.mark.asyncio
    async def test_node_conflict_merges_into_winner(self):
        store = RacingGraphStore()
        winner = await store.insert_node(
            GraphNode(dataset_id="ds", node_type=NodeType.PERSON, label="Jane", properties={"a": 1})
        )
        builder = GraphBuilder(store)

        store.hide_next_node = True
        result = await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(nodes=[{"type": "person", "label": "Jane", "properties": {"b": 2}}]),
        )

        nodes = await store.list_nodes("ds")
        assert len(nodes) == 1
        assert nodes[0].id == winner.id
        assert nodes[0].properties == {"a": 1, "b": 2}
        assert result.nodes_merged == 1

    @pytest.mark.asyncio
    async def test_edge_conflict_merges_into_winner(self):
        store = RacingGraphStore()
        jane = await store.insert_node(GraphNode(dataset_id="ds", node_type=NodeType.PERSON, label="Jane"))
        acme = await store.insert_node(
            GraphNode(dataset_id="ds", node_type=NodeType.ORGANIZATION, label="Acme")
        )
        await store.insert_edge(
            GraphEdge(
                dataset_id="ds",
                source_node_id=jane.id,
                target_node_id=acme.id,
                edge_type=EdgeType.MENTIONS,
                weight=0.2,
            )
        )
        builder = GraphBuilder(store)

        store.hide_next_edge = True
        result = await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(
                nodes=[{"type": "person", "label": "Jane"}, {"type": "organization", "label": "Acme"}],
                edges=[{"source": "Jane", "target": "Acme", "type": "mentions", "weight": 0.6}],
            ),
        )

        edges = await store.list_edges("ds")
        assert len(edges) == 1
        assert edges[0].weight == 0.6
        assert result.edges_merged == 1

    @pytest.mark.asyncio
    async def test_parallel_segments_produce_one_node(self, graph_store):
        builder = GraphBuilder(graph_store)
        payload = extraction(nodes=[{"type": "organization", "label": "Acme"}])

        await asyncio.gather(
            *(builder.upsert_segment_graph("ds", "doc-1", f"seg-{i}", payload) for i in range(5))
        )

        assert len(await graph_store.list_nodes("ds")) == 1

    @pytest.mark.asyncio
    async def test_graph_summary(self, builder):
        await builder.upsert_segment_graph(
            "ds",
            "doc-1",
            "seg-1",
            extraction(
                nodes=TestEdgeUpsert.NODES,
                edges=[{"source": "Jane", "target": "Acme", "type": "mentions"}],
            ),
        )

        assert await builder.get_graph_summary("ds") == {"nodes": 2, "edges": 1}
