# backend/tests/unit/test_whatsapp_service.py
import time
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from mya_recovery.services.whatsapp_service import WhatsAppService
from mya_recovery.utils.circuit_breaker import CircuitState


def make_service() -> WhatsAppService:
    return WhatsAppService("https://evolution.test.local", "evo-key", "mya", timeout=5.0)


def make_response(status_code: int, body=None, text: str = "") -> MagicMock:
    response = MagicMock(status_code=status_code, is_success=200 <= status_code < 300, text=text)
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


@pytest.mark.asyncio
async def test_send_text_success_returns_key_id(mocker):
    mock_call = mocker.patch.object(
        WhatsAppService, "resilient_api_call",
        new_callable=AsyncMock, return_value=make_response(201, {"key": {"id": "MSG123"}}),
    )
    service = make_service()

    result = await service.send_text("+55 (11) 99999-8888", "Olá")

    assert result.success is True
    assert result.message_id == "MSG123"
    _, url = mock_call.await_args.args
    assert url == "https://evolution.test.local/message/sendText/mya"
    assert mock_call.await_args.kwargs["json"] == {"number": "5511999998888", "text": "Olá"}
    assert mock_call.await_args.kwargs["headers"]["apikey"] == "evo-key"


@pytest.mark.asyncio
async def test_send_text_accepts_status_success_body(mocker):
    mocker.patch.object(
        WhatsAppService, "resilient_api_call",
        new_callable=AsyncMock, return_value=make_response(200, {"status": "success"}),
    )
    result = await make_service().send_text("+5511999998888", "Olá")
    assert result.success is True
    assert result.message_id is None


@pytest.mark.asyncio
async def test_send_text_failure_carries_error_body(mocker):
    mocker.patch.object(
        WhatsAppService, "resilient_api_call",
        new_callable=AsyncMock, return_value=make_response(500, {"error": "boom"}, text='{"error": "boom"}'),
    )
    result = await make_service().send_text("+5511999998888", "Olá")
    assert result.success is False
    assert result.status_code == 500
    assert "boom" in result.error


@pytest.mark.asyncio
async def test_send_text_2xx_without_confirmation_is_failure(mocker):
    mocker.patch.object(
        WhatsAppService, "resilient_api_call",
        new_callable=AsyncMock, return_value=make_response(200, {"status": "queued"}, text='{"status": "queued"}'),
    )
    result = await make_service().send_text("+5511999998888", "Olá")
    assert result.success is False


@pytest.mark.asyncio
async def test_unauthorized_triggers_critical_alert(mocker):
    mocker.patch.object(
        WhatsAppService, "resilient_api_call",
        new_callable=AsyncMock, return_value=make_response(401, None, text="Unauthorized"),
    )
    mock_alert = mocker.patch(
        "mya_recovery.services.whatsapp_service.alerting_service.send_critical_alert", new_callable=AsyncMock
    )
    result = await make_service().send_text("+5511999998888", "Olá")
    assert result.success is False
    assert result.error == "Unauthorized"
    mock_alert.assert_awaited_once()


@pytest.mark.asyncio
async def test_transport_error_is_reported_not_raised(mocker):
    mocker.patch.object(
        WhatsAppService, "resilient_api_call",
        new_callable=AsyncMock, side_effect=httpx.ConnectError("connection refused"),
    )
    result = await make_service().send_text("+5511999998888", "Olá")
    assert result.success is False
    assert "connection refused" in result.error


@pytest.mark.asyncio
async def test_missing_configuration_or_number_never_calls_gateway(mocker):
    mock_call = mocker.patch.object(WhatsAppService, "resilient_api_call", new_callable=AsyncMock)

    unconfigured = WhatsAppService(None, None, None)
    result = await unconfigured.send_text("+5511999998888", "Olá")
    assert result.error == "Evolution API not configured"

    result = await make_service().send_text(None, "Olá")
    assert result.error == "Missing WhatsApp number"

    mock_call.assert_not_awaited()


@pytest.mark.asyncio
async def test_open_circuit_fails_fast():
    service = make_service()
    service.http_client = MagicMock()
    service.http_client.post = AsyncMock()
    service.circuit_breaker.state = CircuitState.OPEN
    service.circuit_breaker.last_failure_time = time.monotonic()

    result = await service.send_text("+5511999998888", "Olá")

    assert result.success is False
    assert "OPEN" in result.error
    service.http_client.post.assert_not_awaited()
