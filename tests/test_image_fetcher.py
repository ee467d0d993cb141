"""Tests for the aiohttp image fetcher against a local Drive download service."""

import base64

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from backend.core.image_fetcher import DRIVE_DOWNLOAD_ERROR, ImageFetcher, ImageFetchError
from backend.core.image_optimizer import ImageOptimizer, OptimizeRequestError
from backend.core.queue_processor import QueueProcessor
from backend.db import crud
from tests.conftest import KieMock


def drive_app(handler) -> web.Application:
    app = web.Application()
    app.router.add_post("/drive", handler)
    return app


async def html_reply(request):
    return web.Response(status=200, text="<html>Sign in</html>", content_type="text/html")


@pytest.mark.asyncio
async def test_drive_base64_payload():
    async def handler(request):
        body = await request.json()
        assert body == {"action": "download", "fileId": "f1"}
        return web.json_response({"data": base64.b64encode(b"ring").decode(), "contentType": "image/png"})

    async with TestServer(drive_app(handler)) as server:
        fetcher = ImageFetcher(drive_download_url=str(server.make_url("/drive")))
        data, content_type = await fetcher.download_drive_file("f1")

    assert data == b"ring"
    assert content_type == "image/png"


@pytest.mark.asyncio
async def test_drive_non_json_reply_is_fetch_error():
    async with TestServer(drive_app(html_reply)) as server:
        fetcher = ImageFetcher(drive_download_url=str(server.make_url("/drive")))
        with pytest.raises(ImageFetchError) as exc_info:
            await fetcher.download_drive_file("f1")

    assert str(exc_info.value) == f"{DRIVE_DOWNLOAD_ERROR}: invalid response"


@pytest.mark.asyncio
async def test_drive_error_status_is_fetch_error():
    async def handler(request):
        return web.json_response({"error": "not found"}, status=404)

    async with TestServer(drive_app(handler)) as server:
        fetcher = ImageFetcher(drive_download_url=str(server.make_url("/drive")))
        with pytest.raises(ImageFetchError):
            await fetcher.download_drive_file("f1")


@pytest.mark.asyncio
async def test_optimize_with_non_json_drive_reply_is_bad_gateway(kie_config, recorded_sleep):
    mock = KieMock(generate={})
    async with TestServer(drive_app(html_reply)) as server:
        optimizer = ImageOptimizer(
            api_key="test-api-key",
            config=kie_config,
            fetcher=ImageFetcher(drive_download_url=str(server.make_url("/drive"))),
            transport=mock.transport,
            sleep=recorded_sleep,
        )
        with pytest.raises(OptimizeRequestError) as exc_info:
            await optimizer.optimize(file_id="f1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.message == DRIVE_DOWNLOAD_ERROR
    assert mock.requests == []


@pytest.mark.asyncio
async def test_queue_item_with_non_json_drive_reply_is_marked_failed(kie_config, recorded_sleep, storage, tmp_path):
    project = crud.create_project("org-1", "Rings")
    item = crud.create_queue_item("org-1", project.id, "ring.jpg", file_id="f1")

    async with TestServer(drive_app(html_reply)) as server:
        fetcher = ImageFetcher(drive_download_url=str(server.make_url("/drive")))
        optimizer = ImageOptimizer(
            api_key="test-api-key",
            config=kie_config,
            fetcher=fetcher,
            transport=KieMock(generate={}).transport,
            sleep=recorded_sleep,
        )
        processor = QueueProcessor(optimizer, storage, fetcher, logs_dir=tmp_path / "logs")
        result = await processor.process(item.id)

    updated = crud.get_queue_item(item.id)
    assert result["success"] is False
    assert updated.status == "failed"
    assert updated.completed_at is not None
    assert DRIVE_DOWNLOAD_ERROR in updated.error_message
