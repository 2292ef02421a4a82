from __future__ import annotations

import base64
import json

import httpx
import pytest

from gatherly.mailer import (
    Attachment,
    EmailConfigurationError,
    EmailDeliveryError,
    Mailer,
    sender_address,
)


def _mailer(handler, **overrides) -> Mailer:
    options = {
        "api_key": "re_test_key",
        "sender": "Gatherly <events@gatherly.test>",
        "api_url": "https://email.test/emails",
        "transport": httpx.MockTransport(handler),
    }
    options.update(overrides)
    return Mailer(**options)


def test_sender_address_parses_display_names():
    assert sender_address("Gatherly <events@gatherly.test>") == "events@gatherly.test"
    assert sender_address("plain@gatherly.test") == "plain@gatherly.test"


def test_send_posts_payload_with_bearer_token_and_attachments():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"id": "email_123"})

    mailer = _mailer(handler)
    message_id = mailer.send(
        to="jane@example.com",
        subject="Hello",
        html="<p>Hi</p>",
        attachments=[Attachment(filename="invite.ics", content="BEGIN:VCALENDAR")],
    )

    assert message_id == "email_123"
    [request] = captured
    assert str(request.url) == "https://email.test/emails"
    assert request.headers["authorization"] == "Bearer re_test_key"
    payload = json.loads(request.content)
    assert payload["from"] == "Gatherly <events@gatherly.test>"
    assert payload["to"] == ["jane@example.com"]
    assert payload["subject"] == "Hello"
    [attachment] = payload["attachments"]
    assert attachment["filename"] == "invite.ics"
    assert attachment["content_type"] == "text/calendar"
    assert base64.b64decode(attachment["content"]) == b"BEGIN:VCALENDAR"


def test_misconfigured_mailer_refuses_to_send():
    calls: list[httpx.Request] = []
    mailer = _mailer(lambda request: calls.append(request), api_key="", sender="nobody")

    assert len(mailer.configuration_problems()) == 2
    with pytest.raises(EmailConfigurationError):
        mailer.send(to="jane@example.com", subject="Hi", html="")
    assert calls == []


def test_provider_errors_raise_delivery_error():
    mailer = _mailer(lambda request: httpx.Response(422, json={"message": "bad"}))

    with pytest.raises(EmailDeliveryError, match="422"):
        mailer.send(to="jane@example.com", subject="Hi", html="")


def test_non_object_response_is_a_delivery_error():
    mailer = _mailer(lambda request: httpx.Response(200, json=[{"id": "msg_1"}]))

    with pytest.raises(EmailDeliveryError, match="No email ID returned"):
        mailer.send(to="jane@example.com", subject="Hi", html="")


def test_missing_message_id_is_a_delivery_error():
    mailer = _mailer(lambda request: httpx.Response(200, json={}))

    with pytest.raises(EmailDeliveryError, match="No email ID returned"):
        mailer.send(to="jane@example.com", subject="Hi", html="")


def test_transport_errors_raise_delivery_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    mailer = _mailer(handler)

    with pytest.raises(EmailDeliveryError, match="connection refused"):
        mailer.send(to=["a@example.com", "b@example.com"], subject="Hi", html="")
