"""Tests for local media storage."""

import os
import time
from pathlib import Path

import httpx
import pytest

from wabridge.infra.errors import PermanentRejectError, TransientNetworkError
from wabridge.services.media_store import (
    MediaStore,
    extension_for_mime,
    media_kind_for_mime,
    mime_for_name,
)


@pytest.fixture
def store(tmp_path):
    return MediaStore(root=str(tmp_path / "media"), public_base_url="")


class TestMimeTables:
    """Test mime/extension mapping."""

    def test_extension_for_mime(self):
        assert extension_for_mime("image/jpeg") == ".jpg"
        assert extension_for_mime("audio/ogg; codecs=opus") == ".ogg"
        assert extension_for_mime("application/x-unknown") == ".bin"
        assert extension_for_mime(None) == ".bin"

    def test_mime_for_name(self):
        assert mime_for_name("report.PDF") == "application/pdf"
        assert mime_for_name("noext") == "application/octet-stream"

    def test_media_kind_for_mime(self):
        assert media_kind_for_mime("image/png") == "image"
        assert media_kind_for_mime("video/mp4") == "video"
        assert media_kind_for_mime("audio/mpeg") == "audio"
        assert media_kind_for_mime("application/pdf") == "document"


class TestMediaStore:
    """Test file lifecycle."""

    def test_save_groups_by_account(self, store):
        path = store.save(b"data", "photo.jpg", "acc-1")

        assert Path(path).parent == store.root / "acc-1"
        assert store.read(path) == b"data"

    def test_save_strips_directories_from_name(self, store):
        path = store.save(b"x", "../../escape.txt", "acc-1")

        assert Path(path).parent == store.root / "acc-1"
        assert Path(path).name == "escape.txt"

    def test_save_download_uses_mime_extension(self, store):
        path = store.save_download(b"img", "MSG1", "image/webp", "acc-1")

        assert Path(path).name.startswith("media_MSG1_")
        assert path.endswith(".webp")

    def test_delete_missing_file_is_noop(self, store):
        store.delete(str(store.root / "acc-1" / "missing.bin"))

    def test_cleanup_removes_only_old_files(self, store):
        old = store.save(b"old", "old.bin", "acc-1")
        fresh = store.save(b"new", "new.bin", "acc-1")
        past = time.time() - 7200
        os.utime(old, (past, past))

        removed = store.cleanup(max_age=3600)

        assert removed == 1
        assert not Path(old).exists()
        assert Path(fresh).exists()

    def test_cleanup_without_root(self, tmp_path):
        assert MediaStore(root=str(tmp_path / "absent")).cleanup(max_age=0) == 0

    def test_public_url(self, tmp_path):
        store = MediaStore(root=str(tmp_path), public_base_url="https://cdn.example.test/media/")
        path = store.save(b"x", "a.jpg", "acc-1")

        assert store.public_url(path) == "https://cdn.example.test/media/acc-1/a.jpg"

    def test_public_url_unset(self, store):
        assert store.public_url(store.save(b"x", "a.jpg", "acc-1")) is None


class TestFetchUrl:
    """Test downloading attachments referenced by URL."""

    @pytest.mark.asyncio
    async def test_fetch_saves_body(self, tmp_path):
        def handler(request):
            return httpx.Response(200, content=b"pdf-bytes", headers={"content-type": "application/pdf"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = MediaStore(root=str(tmp_path), http_client=client)

        path = await store.fetch_url("https://files.example.test/docs/invoice.pdf", "acc-1")

        assert path.endswith("_invoice.pdf")
        assert store.read(path) == b"pdf-bytes"

    @pytest.mark.asyncio
    async def test_fetch_adds_extension_from_content_type(self, tmp_path):
        def handler(request):
            return httpx.Response(200, content=b"img", headers={"content-type": "image/png"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = MediaStore(root=str(tmp_path), http_client=client)

        path = await store.fetch_url("https://files.example.test/download/12345", "acc-1")

        assert path.endswith(".png")

    @pytest.mark.asyncio
    async def test_fetch_rejected(self, tmp_path):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        store = MediaStore(root=str(tmp_path), http_client=client)

        with pytest.raises(PermanentRejectError):
            await store.fetch_url("https://files.example.test/a.jpg", "acc-1")

    @pytest.mark.asyncio
    async def test_fetch_server_error_is_transient(self, tmp_path):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        store = MediaStore(root=str(tmp_path), http_client=client)

        with pytest.raises(TransientNetworkError):
            await store.fetch_url("https://files.example.test/a.jpg", "acc-1")

    @pytest.mark.asyncio
    async def test_fetch_unreachable_is_transient(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = MediaStore(root=str(tmp_path), http_client=client)

        with pytest.raises(TransientNetworkError):
            await store.fetch_url("https://files.example.test/a.jpg", "acc-1")
