import httpx
import pytest
import respx

from configure_twilio import API_BASE, find_number_sid, webhook_params


class TestWebhookParams:
    def test_gather_webhooks(self):
        params = webhook_params("https://demo.example.com/")
        assert params["VoiceUrl"] == "https://demo.example.com/twilio/voice"
        assert params["StatusCallback"] == "https://demo.example.com/twilio/status"

    def test_media_stream(self):
        assert webhook_params("https://demo.example.com", stream=True)["VoiceUrl"] == "https://demo.example.com/twiml"


class TestFindNumberSid:
    def test_finds_sid(self):
        with respx.mock:
            respx.get(f"{API_BASE}/Accounts/AC123/IncomingPhoneNumbers.json").mock(
                return_value=httpx.Response(200, json={"incoming_phone_numbers": [{"sid": "PN1"}]})
            )
            with httpx.Client() as client:
                assert find_number_sid(client, "AC123", "+15125550000") == "PN1"

    def test_unknown_number_exits(self):
        with respx.mock:
            respx.get(f"{API_BASE}/Accounts/AC123/IncomingPhoneNumbers.json").mock(
                return_value=httpx.Response(200, json={"incoming_phone_numbers": []})
            )
            with httpx.Client() as client, pytest.raises(SystemExit):
                find_number_sid(client, "AC123", "+15125550000")
