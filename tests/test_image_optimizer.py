"""Tests for the end-to-end optimization pipeline."""

import asyncio
import json
import logging

import httpx
import pytest

from backend.core.image_optimizer import (
    IMAGE_REQUIRED_ERROR,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PASSTHROUGH,
    ImageOptimizer,
    OptimizeRequestError,
    terminal_status,
    to_passthrough_response,
)
from backend.core.kie_client import KieConfig
from backend.core.outcome_resolver import (
    CAUSE_INTERNAL_ERROR,
    CAUSE_POLL_TIMEOUT,
    Failure,
    Passthrough,
    Success,
)
from backend.core.prompt_builder import DEFAULT_PROMPT
from backend.utils.logger import ALERT_LOGGER_NAME
from tests.conftest import (
    FAILED_STATUS,
    PENDING_STATUS,
    RESULT_URL,
    SOURCE_URL,
    SUCCESS_STATUS,
    KieMock,
)


class RecordingReporter:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def update(self, progress, status=None, **fields):
        if self.fail:
            raise RuntimeError("database is locked")
        self.calls.append((progress, fields))


def make_optimizer(mock: KieMock, kie_config, recorded_sleep, fetcher=None, api_key="test-api-key"):
    return ImageOptimizer(
        api_key=api_key,
        config=kie_config,
        fetcher=fetcher,
        transport=mock.transport,
        sleep=recorded_sleep,
    )


@pytest.mark.asyncio
async def test_async_task_succeeds_after_two_processing_polls(kie_config, recorded_sleep):
    mock = KieMock(generate={"data": {"taskId": "t1"}}, statuses=[PENDING_STATUS, PENDING_STATUS, SUCCESS_STATUS])
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    response = await optimizer.optimize(image_url=SOURCE_URL)

    assert response == {"success": True, "optimized_url": RESULT_URL}
    assert len(mock.generate_calls) == 1
    assert len(mock.status_calls) == 3


@pytest.mark.asyncio
async def test_generate_request_payload(kie_config, recorded_sleep):
    mock = KieMock(generate={"data": {"images": [RESULT_URL]}})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    await optimizer.optimize(image_url=SOURCE_URL, settings={})

    request = mock.generate_calls[0]
    assert str(request.url) == "https://api.kie.ai/api/v1/flux/kontext/generate"
    assert request.headers["Authorization"] == "Bearer test-api-key"
    assert json.loads(request.content) == {
        "prompt": DEFAULT_PROMPT,
        "image": SOURCE_URL,
        "model": "flux-kontext-pro",
        "aspect_ratio": "1:1",
        "output_format": "png",
    }


@pytest.mark.asyncio
async def test_rate_limited_generate_returns_original(kie_config, recorded_sleep):
    mock = KieMock(generate=httpx.Response(429, json={"msg": "Too many requests"}))
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    response = await optimizer.optimize(image_url=SOURCE_URL)

    assert response["passthrough"] is True
    assert response["original_url"] == SOURCE_URL
    assert "rate limit" in response["message"]
    assert mock.status_calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [{"data": {"images": [RESULT_URL]}}, {"output": [RESULT_URL]}])
async def test_immediate_image_skips_polling(body, kie_config, recorded_sleep):
    mock = KieMock(generate=body)
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    response = await optimizer.optimize(image_url=SOURCE_URL)

    assert response == {"success": True, "optimized_url": RESULT_URL}
    assert mock.status_calls == []
    assert recorded_sleep.calls == []


@pytest.mark.asyncio
async def test_missing_api_key_makes_no_network_calls(kie_config, recorded_sleep, caplog):
    mock = KieMock(generate={"data": {"taskId": "t1"}})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep, api_key="")

    with caplog.at_level(logging.WARNING, logger=ALERT_LOGGER_NAME):
        result = await optimizer.optimize_outcome(image_url=SOURCE_URL)

    assert mock.requests == []
    assert result.response["error"] == "KIE_AI_API_KEY not configured"
    assert result.response["passthrough"] is True
    assert result.response["message"] == "Image returned without optimization - API key not set"
    assert result.response["original_url"] == SOURCE_URL
    assert isinstance(result.outcome, Failure)
    assert result.status == STATUS_FAILED
    assert any(record.name == ALERT_LOGGER_NAME for record in caplog.records)


@pytest.mark.asyncio
async def test_unauthorized_is_passthrough_and_alerts(kie_config, recorded_sleep, caplog):
    mock = KieMock(generate=httpx.Response(401, json={"msg": "Invalid API key"}))
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    with caplog.at_level(logging.WARNING, logger=ALERT_LOGGER_NAME):
        response = await optimizer.optimize(image_url=SOURCE_URL)

    assert response["passthrough"] is True
    assert response["original_url"] == SOURCE_URL
    assert any(record.name == ALERT_LOGGER_NAME for record in caplog.records)


@pytest.mark.asyncio
async def test_provider_failures_preserve_original(kie_config, recorded_sleep):
    """Server errors, network errors, odd bodies and failed tasks all hand back the input URL."""
    def connection_reset(request):
        return httpx.ConnectError("connection reset", request=request)

    cases = [
        KieMock(generate=httpx.Response(500)),
        KieMock(generate=connection_reset),
        KieMock(generate={"code": 200, "msg": "success"}),
        KieMock(generate={"data": {"taskId": "t1"}}, statuses=[FAILED_STATUS]),
    ]
    for mock in cases:
        optimizer = make_optimizer(mock, kie_config, recorded_sleep)
        response = await optimizer.optimize(image_url=SOURCE_URL)

        assert response["passthrough"] is True
        assert response["original_url"] == SOURCE_URL
        assert "success" not in response


@pytest.mark.asyncio
async def test_failed_task_carries_provider_error(kie_config, recorded_sleep):
    mock = KieMock(generate={"data": {"taskId": "t1"}}, statuses=[FAILED_STATUS])
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    response = await optimizer.optimize(image_url=SOURCE_URL)

    assert response["task_id"] == "t1"
    assert response["error"] == "Image processing failed due to invalid format"


@pytest.mark.asyncio
async def test_poll_timeout_response(kie_config, recorded_sleep):
    mock = KieMock(generate={"data": {"taskId": "t1"}}, statuses=[PENDING_STATUS])
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    response = await optimizer.optimize(image_url=SOURCE_URL)

    assert response["passthrough"] is True
    assert response["task_id"] == "t1"
    assert response["error"] == "Timeout waiting for image optimization"
    assert len(mock.status_calls) == 30


@pytest.mark.asyncio
async def test_slow_requests_still_get_every_poll_attempt():
    """Request latency must not cut the attempt count short of the cap."""
    config = KieConfig(
        base_url="https://api.kie.ai/api/v1", poll_interval=0.01, max_poll_attempts=30, request_timeout=1.0
    )
    mock = KieMock(generate={"data": {"taskId": "t1"}}, statuses=[PENDING_STATUS])

    async def slow_handler(request):
        await asyncio.sleep(0.04)
        return mock.handler(request)

    optimizer = ImageOptimizer(api_key="test-api-key", config=config, transport=httpx.MockTransport(slow_handler))

    response = await optimizer.optimize(image_url=SOURCE_URL)

    assert len(mock.status_calls) == 30
    assert response["passthrough"] is True
    assert response["error"] == "Timeout waiting for image optimization"


def test_default_budget_covers_request_latency():
    config = KieConfig(poll_interval=2.0, max_poll_attempts=30, request_timeout=30.0)
    assert config.wall_clock_budget == 91.0
    assert KieConfig(total_timeout=5.0).wall_clock_budget == 5.0


@pytest.mark.asyncio
async def test_wall_clock_budget_expiry(recorded_sleep):
    """When the overall budget runs out mid-poll the call still resolves to passthrough."""
    config = KieConfig(base_url="https://api.kie.ai/api/v1", poll_interval=10.0, total_timeout=0.05)
    mock = KieMock(generate={"data": {"taskId": "t1"}}, statuses=[PENDING_STATUS])
    optimizer = ImageOptimizer(api_key="test-api-key", config=config, transport=mock.transport)

    result = await optimizer.optimize_outcome(image_url=SOURCE_URL)

    assert isinstance(result.outcome, Passthrough)
    assert result.outcome.cause == CAUSE_POLL_TIMEOUT
    assert result.response["task_id"] == "t1"
    assert result.response["original_url"] == SOURCE_URL


@pytest.mark.asyncio
async def test_unexpected_error_becomes_passthrough(kie_config, recorded_sleep):
    def explode(request):
        raise RuntimeError("unexpected transport bug")

    mock = KieMock(generate=explode)
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    result = await optimizer.optimize_outcome(image_url=SOURCE_URL)

    assert result.outcome.cause == CAUSE_INTERNAL_ERROR
    assert result.response["original_url"] == SOURCE_URL


@pytest.mark.asyncio
async def test_missing_image_is_rejected(kie_config, recorded_sleep):
    mock = KieMock(generate={})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    with pytest.raises(OptimizeRequestError) as exc_info:
        await optimizer.optimize()

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == IMAGE_REQUIRED_ERROR
    assert mock.requests == []


@pytest.mark.asyncio
async def test_invalid_model_and_image_are_rejected(kie_config, recorded_sleep):
    mock = KieMock(generate={})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    with pytest.raises(OptimizeRequestError):
        await optimizer.optimize(image_url=SOURCE_URL, ai_model="dall-e-3")
    with pytest.raises(OptimizeRequestError):
        await optimizer.optimize(image_url="ftp://example.com/ring.jpg")
    assert mock.requests == []


@pytest.mark.asyncio
async def test_drive_file_is_sent_as_data_uri(kie_config, recorded_sleep, fetcher):
    mock = KieMock(generate={"data": {"images": [RESULT_URL]}})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep, fetcher=fetcher)

    response = await optimizer.optimize(file_id="drive-file-1", ai_model="flux-kontext-max")

    assert response["success"] is True
    payload = json.loads(mock.generate_calls[0].content)
    assert payload["image"].startswith("data:image/png;base64,")
    assert payload["model"] == "flux-kontext-max"


@pytest.mark.asyncio
async def test_drive_failure_is_bad_gateway(kie_config, recorded_sleep, fetcher):
    mock = KieMock(generate={})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep, fetcher=fetcher)

    with pytest.raises(OptimizeRequestError) as exc_info:
        await optimizer.optimize(file_id="missing-file")

    assert exc_info.value.status_code == 502
    assert exc_info.value.message == "Failed to download image from Google Drive"


@pytest.mark.asyncio
async def test_url_wins_over_file_id(kie_config, recorded_sleep, fetcher):
    mock = KieMock(generate={"data": {"images": [RESULT_URL]}})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep, fetcher=fetcher)

    await optimizer.optimize(image_url=SOURCE_URL, file_id="drive-file-1")

    assert json.loads(mock.generate_calls[0].content)["image"] == SOURCE_URL


@pytest.mark.asyncio
async def test_reporter_receives_80_checkpoint(kie_config, recorded_sleep):
    mock = KieMock(generate={"data": {"taskId": "t1"}}, statuses=[SUCCESS_STATUS])
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)
    reporter = RecordingReporter()

    await optimizer.optimize(image_url=SOURCE_URL, reporter=reporter)

    assert reporter.calls == [(80, {"task_id": "t1"})]


@pytest.mark.asyncio
async def test_reporter_errors_do_not_break_optimization(kie_config, recorded_sleep):
    mock = KieMock(generate={"output": [RESULT_URL]})
    optimizer = make_optimizer(mock, kie_config, recorded_sleep)

    response = await optimizer.optimize(image_url=SOURCE_URL, reporter=RecordingReporter(fail=True))

    assert response == {"success": True, "optimized_url": RESULT_URL}


def test_terminal_status_mapping():
    assert terminal_status(Success(result_url=RESULT_URL)) == STATUS_COMPLETED
    assert terminal_status(Passthrough(cause="rate limited")) == STATUS_PASSTHROUGH
    assert terminal_status(Failure(reason="KIE_AI_API_KEY not configured")) == STATUS_FAILED


def test_passthrough_response_shape():
    response = to_passthrough_response(Passthrough(cause="bad format", task_id="t1", error="bad format"), SOURCE_URL)
    assert response == {
        "passthrough": True,
        "original_url": SOURCE_URL,
        "message": "Image returned without optimization - Kie.ai task failed",
        "task_id": "t1",
        "error": "bad format",
    }
