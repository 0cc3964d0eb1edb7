import json

import httpx

from tenantauth.service.notifications import (
    LogOtpNotifier,
    WebhookOtpNotifier,
    render_otp_message,
)

PHONE = "9876543210"


def test_render_message_mentions_purpose_and_expiry():
    text = render_otp_message("482913", "reset_password", 10)
    assert text.startswith("482913 is your verification code to reset your password.")
    assert "expires in 10 minutes" in text


def test_render_message_unknown_purpose():
    assert "to continue." in render_otp_message("111111", "other", 5)


async def test_log_notifier_always_succeeds():
    assert await LogOtpNotifier().deliver_otp(PHONE, "123456", "login") is True


async def test_webhook_posts_payload_with_bearer():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"queued": True})

    notifier = WebhookOtpNotifier(
        "https://sms.example.test/send",
        token="gateway-token",
        transport=httpx.MockTransport(handler),
    )
    assert await notifier.deliver_otp(PHONE, "654321", "login") is True
    assert seen["auth"] == "Bearer gateway-token"
    assert seen["body"]["to"] == PHONE
    assert seen["body"]["purpose"] == "login"
    assert seen["body"]["message"].startswith("654321 is your verification code to sign in.")


async def test_webhook_without_token_sends_no_auth_header():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200)

    notifier = WebhookOtpNotifier(
        "https://sms.example.test/send", transport=httpx.MockTransport(handler)
    )
    assert await notifier.deliver_otp(PHONE, "654321", "verify_phone") is True
    assert seen["auth"] is None


async def test_webhook_gateway_error_reports_failure():
    notifier = WebhookOtpNotifier(
        "https://sms.example.test/send",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    assert await notifier.deliver_otp(PHONE, "654321", "login") is False


async def test_webhook_unreachable_reports_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    notifier = WebhookOtpNotifier(
        "https://sms.example.test/send", transport=httpx.MockTransport(handler)
    )
    assert await notifier.deliver_otp(PHONE, "654321", "login") is False
