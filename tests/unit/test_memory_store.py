"""
Unit tests for the in-memory stores.
"""

from datetime import datetime, timedelta

import pytest

from kbingest.models.document_models import Document, DocumentStatus
from kbingest.storage.memory_store import InMemoryDocumentStore


class TestInMemoryDocumentStore:
    @pytest.mark.asyncio
    async def test_list_documents_oldest_first(self):
        store = InMemoryDocumentStore()
        base = datetime(2024, 1, 1, 12, 0)
        await store.create(Document(id="late", dataset_id="ds", content="b", created_at=base + timedelta(hours=1)))
        await store.create(Document(id="early", dataset_id="ds", content="a", created_at=base))
        await store.create(Document(id="elsewhere", dataset_id="other", content="c", created_at=base))
        await store.update_status("late", DocumentStatus.ERROR, "boom")

        assert [d.id for d in await store.list_documents("ds")] == ["early", "late"]
        assert [d.id for d in await store.list_documents("ds", [DocumentStatus.ERROR])] == ["late"]
        assert await store.list_documents("ds", []) == []

    @pytest.mark.asyncio
    async def test_listed_documents_are_copies(self):
        store = InMemoryDocumentStore()
        await store.create(Document(id="doc-1", dataset_id="ds", content="text"))

        listed = await store.list_documents("ds")
        listed[0].indexing_status = DocumentStatus.COMPLETED

        assert (await store.get("doc-1")).indexing_status == DocumentStatus.WAITING
