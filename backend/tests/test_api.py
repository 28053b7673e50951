"""End-to-end API tests: upload, poll, download, expire."""
from pathlib import Path

import pytest
from starlette.datastructures import UploadFile


def upload(name="notes.txt", data=b"hello", content_type="text/plain"):
    return {"file": (name, data, content_type)}


async def submit(client, variant="upper-txt", **kwargs) -> str:
    response = await client.post(f"/{variant}", files=upload(**kwargs))
    assert response.status_code == 303
    location = response.headers["location"]
    assert location.startswith("/info/")
    return location.removeprefix("/info/")


class TestUpload:
    @pytest.mark.asyncio
    async def test_redirects_to_status(self, client, services):
        file_id = await submit(client)

        assert await services.registry.get(file_id) is not None

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, client):
        assert await submit(client) != await submit(client)

    @pytest.mark.asyncio
    async def test_type_mismatch_rejected_before_storage(self, client, services, settings):
        response = await client.post(
            "/upper-txt", files=upload("book.epub", b"PK", "application/epub+zip"),
        )

        assert response.status_code == 415
        assert response.json()["detail"] == "File type is not text/plain"
        assert "location" not in response.headers
        assert len(services.registry) == 0
        assert list(Path(settings.STORAGE_PATH).iterdir()) == []

    @pytest.mark.asyncio
    async def test_octet_stream_declared_for_text_variant(self, client, services, settings):
        response = await client.post(
            "/upper-txt", files=upload("notes.txt", b"0123456789", "application/octet-stream"),
        )

        assert response.status_code == 415
        assert response.json()["detail"] == "File type is not text/plain"
        assert "location" not in response.headers
        assert len(services.registry) == 0
        assert list(Path(settings.STORAGE_PATH).iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_file_field(self, client):
        response = await client.post("/upper-txt", data={"mode": "fast"})

        assert response.status_code == 415

    @pytest.mark.asyncio
    async def test_too_large(self, client, services):
        response = await client.post("/upper-txt", files=upload(data=b"x" * 2048))

        assert response.status_code == 413
        assert len(services.registry) == 0

    @pytest.mark.asyncio
    async def test_oversized_upload_is_not_buffered(self, client, services, monkeypatch):
        consumed = []
        original_read = UploadFile.read

        async def counting_read(self, size=-1):
            data = await original_read(self, size)
            consumed.append(len(data))
            return data

        monkeypatch.setattr(UploadFile, "read", counting_read)
        response = await client.post("/upper-txt", files=upload(data=b"x" * 100_000))

        assert response.status_code == 413
        assert sum(consumed) <= 1025
        assert len(services.registry) == 0

    @pytest.mark.asyncio
    async def test_upload_at_limit_is_accepted(self, client):
        await submit(client, data=b"x" * 1024)

    @pytest.mark.asyncio
    async def test_invalid_options(self, client, services):
        response = await client.post("/upper-txt", files=upload(), data={"mode": "invalid"})

        assert response.status_code == 400
        assert len(services.registry) == 0

    @pytest.mark.asyncio
    async def test_unknown_variant(self, client):
        response = await client.post("/nope-txt", files=upload())

        assert response.status_code == 404


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_pending_status_and_no_download(self, client, services, gate):
        file_id = await submit(client, variant="gated-txt")

        response = await client.get(f"/info/{file_id}")
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        body = response.json()
        assert body["status"] == "pending"
        assert body["originalName"] == "notes.txt"
        assert body["downloadUrl"] is None

        assert (await client.get(f"/files/{file_id}")).status_code == 404

        gate.event.set()
        await services.orchestrator.drain()
        assert (await client.get(f"/info/{file_id}")).json()["status"] == "done"

    @pytest.mark.asyncio
    async def test_done_downloads_then_expires(self, client, services, clock):
        file_id = await submit(client, data=b"hello")
        await services.orchestrator.drain()

        body = (await client.get(f"/info/{file_id}")).json()
        assert body["status"] == "done"
        assert body["downloadUrl"] == f"/files/{file_id}"
        assert body["expiresAt"] == pytest.approx(body["generatedAt"] + 300)

        response = await client.get(f"/files/{file_id}")
        assert response.status_code == 200
        assert response.content == b"HELLO"
        assert response.headers["content-length"] == "5"
        assert response.headers["content-disposition"] == 'attachment; filename="notes-converted.txt"'
        assert response.headers["x-file-name"] == "notes-converted.txt"
        assert response.headers["content-type"].startswith("text/plain")
        assert services.registry.active_leases(file_id) == 0

        handle = services.scheduler.get_handle(file_id)
        await clock.advance(299)
        assert (await client.get(f"/info/{file_id}")).status_code == 200

        await clock.advance(1)
        await handle.wait()

        response = await client.get(f"/info/{file_id}")
        assert response.status_code == 404
        assert response.json() == {"id": file_id, "status": "not found"}
        assert (await client.get(f"/files/{file_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_non_ascii_filename_header(self, client, services):
        file_id = await submit(client, name="報告.txt")
        await services.orchestrator.drain()

        response = await client.get(f"/files/{file_id}")

        assert response.status_code == 200
        assert response.headers["content-disposition"].startswith("attachment; filename*=utf-8''")
        assert response.headers["x-file-name"] == "%E5%A0%B1%E5%91%8A-converted.txt"

    @pytest.mark.asyncio
    async def test_failure_reports_error_then_expires(self, client, services, clock):
        file_id = await submit(client, variant="broken-txt")
        await services.orchestrator.drain()

        body = (await client.get(f"/info/{file_id}")).json()
        assert body["status"] == "error"
        assert body["error"] == "converter exploded"
        assert body["downloadUrl"] is None
        assert (await client.get(f"/files/{file_id}")).status_code == 404

        record = await services.registry.get(file_id)
        assert not Path(record.original_storage_key).exists()

        handle = services.scheduler.get_handle(file_id)
        await clock.advance(10)
        await handle.wait()

        assert (await client.get(f"/info/{file_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_id(self, client):
        response = await client.get("/info/1700000000000-unknown00")

        assert response.status_code == 404
        assert response.json()["status"] == "not found"
        assert (await client.get("/files/1700000000000-unknown00")).status_code == 404


class TestMeta:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "storage": "local"}

    @pytest.mark.asyncio
    async def test_variants(self, client):
        response = await client.get("/api/variants")

        variants = {v["name"]: v for v in response.json()}
        assert set(variants) == {"upper-txt", "broken-txt", "silent-txt", "gated-txt"}
        assert variants["upper-txt"]["acceptType"] == "text/plain"
        assert variants["upper-txt"]["options"] == ["mode"]
