import json

import httpx
import pytest

from gatepass.mailer import RESEND_URL, Mailer, MailerError, render


def test_disabled_without_credentials():
    assert not Mailer("", "tickets@example.com", httpx.AsyncClient()).enabled
    assert not Mailer("re_key", "", httpx.AsyncClient()).enabled
    assert not Mailer("re_key", "tickets@example.com", None).enabled


@pytest.mark.asyncio
async def test_send_posts_to_resend():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "em_1"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    mailer = Mailer("re_key", "tickets@example.com", http,
                    sender_name="Test Fest Tickets")
    await mailer.send("ada@example.com", "Your ticket", "<p>hi</p>")

    assert seen["url"] == RESEND_URL
    assert seen["auth"] == "Bearer re_key"
    assert seen["body"]["from"] == "Test Fest Tickets <tickets@example.com>"
    assert seen["body"]["to"] == ["ada@example.com"]


@pytest.mark.asyncio
async def test_rejected_send_raises():
    http = httpx.AsyncClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(422, json={"message": "bad from"})
    ))
    mailer = Mailer("re_key", "tickets@example.com", http)
    with pytest.raises(MailerError):
        await mailer.send("ada@example.com", "s", "<p>hi</p>")


def test_attendee_ticket_template_escapes_names():
    html = render(
        "attendee_ticket.html",
        event_name="Test Fest", event_venue="Hall A", event_time="8 PM",
        currency_symbol="₦", receipt_url="https://t.example.com/receipt",
        customer_name="Ada",
        attendee={"name": "<b>Bo</b>", "email": "bo@example.com",
                  "serial": "ABCDEF", "ticketName": "VIP"},
    )
    assert "ABCDEF" in html
    assert "<b>Bo</b>" not in html
