"""Tests for adding, extracting, listing and deleting documents."""
import pytest
from httpx import AsyncClient


async def _create_space(client: AsyncClient, name: str = "Doc Space") -> int:
    resp = await client.post("/api/spaces", json={"name": name, "template": "quickStudy"})
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.mark.asyncio
async def test_paste_document_is_usable_immediately(client: AsyncClient):
    space_id = await _create_space(client)
    resp = await client.post(
        f"/api/spaces/{space_id}/documents",
        json={"name": "Lecture 1", "text": "  Mitochondria produce ATP.  "},
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["source_type"] == "paste"
    assert data["extraction_status"] == "completed"
    assert data["digest_status"] == "pending"
    assert data["text_length"] == len("Mitochondria produce ATP.")


@pytest.mark.asyncio
async def test_empty_paste_is_rejected(client: AsyncClient):
    space_id = await _create_space(client)
    resp = await client.post(
        f"/api/spaces/{space_id}/documents",
        json={"name": "Blank", "text": "   "},
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Pasted text is empty."


@pytest.mark.asyncio
async def test_document_for_missing_space_returns_404(client: AsyncClient):
    resp = await client.post("/api/spaces/999/documents", json={"name": "X", "text": "y"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_file_document_waits_for_extraction(client: AsyncClient):
    space_id = await _create_space(client)
    resp = await client.post(
        f"/api/spaces/{space_id}/documents",
        json={"name": "slides.pdf", "source_type": "file"},
    )
    assert resp.status_code == 201
    doc = resp.json()
    assert doc["extraction_status"] == "pending"
    assert doc["text_length"] == 0

    # A pending file gives the space nothing to generate from
    resp = await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")
    assert resp.status_code == 200
    assert resp.json()["no_content"] is True

    resp = await client.put(
        f"/api/documents/{doc['id']}/extraction",
        json={"status": "completed", "text": "Slide text about enzymes."},
    )
    assert resp.status_code == 200
    assert resp.json()["extraction_status"] == "completed"
    assert resp.json()["text_length"] == len("Slide text about enzymes.")

    resp = await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")
    assert resp.json()["no_content"] is False
    assert resp.json()["ready"] == ["summary", "keyTerms", "quiz"]


@pytest.mark.asyncio
async def test_failed_extraction_records_error(client: AsyncClient):
    space_id = await _create_space(client)
    doc = (await client.post(
        f"/api/spaces/{space_id}/documents",
        json={"name": "scan.pdf", "source_type": "file"},
    )).json()

    resp = await client.put(f"/api/documents/{doc['id']}/extraction", json={"status": "failed"})
    assert resp.status_code == 200
    assert resp.json()["extraction_status"] == "failed"
    assert resp.json()["extraction_error"] == "Text extraction failed."


@pytest.mark.asyncio
async def test_new_extraction_resets_digest(client: AsyncClient):
    space_id = await _create_space(client)
    doc = (await client.post(
        f"/api/spaces/{space_id}/documents",
        json={"name": "Notes", "text": "Version one."},
    )).json()
    await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")

    docs = (await client.get(f"/api/spaces/{space_id}/documents")).json()
    assert docs[0]["digest_status"] == "ready"

    resp = await client.put(
        f"/api/documents/{doc['id']}/extraction",
        json={"status": "completed", "text": "Version two."},
    )
    assert resp.json()["digest_status"] == "pending"


@pytest.mark.asyncio
async def test_list_documents_oldest_first(client: AsyncClient):
    space_id = await _create_space(client)
    for name in ("First", "Second", "Third"):
        await client.post(f"/api/spaces/{space_id}/documents", json={"name": name, "text": name})

    resp = await client.get(f"/api/spaces/{space_id}/documents")
    assert resp.status_code == 200
    assert [d["name"] for d in resp.json()] == ["First", "Second", "Third"]


@pytest.mark.asyncio
async def test_delete_document(client: AsyncClient):
    space_id = await _create_space(client)
    doc = (await client.post(
        f"/api/spaces/{space_id}/documents",
        json={"name": "Notes", "text": "Some text."},
    )).json()

    resp = await client.delete(f"/api/documents/{doc['id']}")
    assert resp.status_code == 204

    resp = await client.get(f"/api/spaces/{space_id}/documents")
    assert resp.json() == []

    resp = await client.delete(f"/api/documents/{doc['id']}")
    assert resp.status_code == 404
