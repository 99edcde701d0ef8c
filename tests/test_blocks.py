"""Tests for block generation, polling, retry and reset endpoints."""
import asyncio

import pytest
from httpx import AsyncClient

from studyspace.services.errors import LocalModelError


async def _space_with_notes(client: AsyncClient, template: str = "quickStudy") -> int:
    resp = await client.post("/api/spaces", json={"name": "Blocks", "template": template})
    assert resp.status_code == 201
    space_id = resp.json()["id"]
    resp = await client.post(
        f"/api/spaces/{space_id}/documents",
        json={"name": "Notes", "text": "Plants convert light into energy."},
    )
    assert resp.status_code == 201
    return space_id


async def _wait_for_pass(client: AsyncClient, space_id: int, attempts: int = 100) -> dict:
    for _ in range(attempts):
        data = (await client.get(f"/api/spaces/{space_id}/blocks/generate/status")).json()
        if data["phase"] in ("completed", "failed"):
            return data
        await asyncio.sleep(0.02)
    raise AssertionError("generation pass did not finish")


@pytest.mark.asyncio
async def test_generate_inline(client: AsyncClient):
    space_id = await _space_with_notes(client)

    resp = await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")
    assert resp.status_code == 200
    data = resp.json()
    assert data["backend"] == "local"
    assert data["ready"] == ["summary", "keyTerms", "quiz"]
    assert data["failed"] == []

    blocks = (await client.get(f"/api/spaces/{space_id}/blocks")).json()
    by_type = {b["block_type"]: b for b in blocks}
    assert by_type["summary"]["status"] == "ready"
    assert by_type["summary"]["payload"] == {"text": "Summary by local."}
    assert by_type["quiz"]["payload"]["questions"][0]["correctIndex"] == 1


@pytest.mark.asyncio
async def test_generate_in_background_and_poll(client: AsyncClient):
    space_id = await _space_with_notes(client)

    resp = await client.get(f"/api/spaces/{space_id}/blocks/generate/status")
    assert resp.json()["phase"] == "idle"

    resp = await client.post(f"/api/spaces/{space_id}/blocks/generate")
    assert resp.status_code == 202
    assert resp.json() == {"status": "started", "phase": "queued", "space_id": space_id}

    status = await _wait_for_pass(client, space_id)
    assert status["phase"] == "completed"
    assert status["backend"] == "local"
    assert status["blocks_ready"] == 3
    assert status["blocks_failed"] == 0


@pytest.mark.asyncio
async def test_second_generate_while_running_is_rejected(client: AsyncClient, local_backend):
    local_backend.delay = 0.1
    space_id = await _space_with_notes(client)

    resp = await client.post(f"/api/spaces/{space_id}/blocks/generate")
    assert resp.status_code == 202

    resp = await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")
    assert resp.status_code == 409

    await _wait_for_pass(client, space_id)


@pytest.mark.asyncio
async def test_failed_block_reports_error_and_can_be_retried(client: AsyncClient, local_backend):
    local_backend.errors["keyTerms"] = LocalModelError("The local model timed out.")
    space_id = await _space_with_notes(client)

    data = (await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")).json()
    assert data["failed"] == ["keyTerms"]
    assert data["errors"] == {"keyTerms": "The local model timed out."}

    blocks = {b["block_type"]: b for b in (await client.get(f"/api/spaces/{space_id}/blocks")).json()}
    assert blocks["keyTerms"]["status"] == "failed"
    assert blocks["keyTerms"]["error_message"] == "The local model timed out."

    # Plain generate leaves the failed block alone
    data = (await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")).json()
    assert data["ready"] == [] and data["failed"] == []

    del local_backend.errors["keyTerms"]
    resp = await client.post(f"/api/spaces/{space_id}/blocks/retry-failed?wait=true")
    assert resp.status_code == 200
    assert resp.json()["ready"] == ["keyTerms"]


@pytest.mark.asyncio
async def test_generate_without_content_leaves_blocks_idle(client: AsyncClient, local_backend):
    resp = await client.post("/api/spaces", json={"name": "Empty", "template": "quickStudy"})
    space_id = resp.json()["id"]

    data = (await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")).json()
    assert data["no_content"] is True
    assert local_backend.calls == []

    blocks = (await client.get(f"/api/spaces/{space_id}/blocks")).json()
    assert {b["status"] for b in blocks} == {"idle"}


@pytest.mark.asyncio
async def test_reset_blocks(client: AsyncClient):
    space_id = await _space_with_notes(client)
    await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")

    resp = await client.post(f"/api/spaces/{space_id}/blocks/reset")
    assert resp.status_code == 200
    assert resp.json() == {"space_id": space_id, "blocks_reset": 3}

    blocks = (await client.get(f"/api/spaces/{space_id}/blocks")).json()
    assert all(b["status"] == "idle" and b["payload"] is None for b in blocks)


@pytest.mark.asyncio
async def test_remote_space_generates_with_remote_backend(client: AsyncClient, monitor, remote_backend):
    monitor.set_key("sk-test")
    resp = await client.post(
        "/api/spaces",
        json={"name": "Remote", "template": "quickStudy", "backend_preference": "remote"},
    )
    space_id = resp.json()["id"]
    await client.post(f"/api/spaces/{space_id}/documents", json={"name": "Notes", "text": "Text."})

    data = (await client.post(f"/api/spaces/{space_id}/blocks/generate?wait=true")).json()
    assert data["backend"] == "remote"
    assert sorted(data["ready"]) == ["keyTerms", "quiz", "summary"]
    assert set(remote_backend.calls) == {"summary", "keyTerms", "quiz"}
