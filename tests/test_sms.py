import pytest

from slack_sms.errors import Malformed, NotFound, NotProvisioned, Unauthorized
from slack_sms.phone import dialable, digits, phone_matches
from slack_sms.sms import (
    InboundSms,
    SMSInboundRouter,
    TaggedMessage,
    extract_channel_tag,
    send_sms,
    twiml_reply,
)


def inbound(body="#general hello there", account="AC123", sender="+15551234567"):
    return InboundSms.model_validate(
        {"AccountSid": account, "From": sender, "To": "+15551230000", "Body": body}
    )


@pytest.fixture
def router(store, directory):
    return SMSInboundRouter(store, lambda tenant: directory)


@pytest.mark.parametrize(
    "body, expected",
    [
        ("#general hello there", TaggedMessage("general", "hello there")),
        ("hello #dev-ops_team there", TaggedMessage("dev-ops_team", "hello there")),
        ("running late #Random", TaggedMessage("Random", "running late")),
        ("#one and #two", TaggedMessage("one", "and #two")),
    ],
)
def test_extract_channel_tag(body, expected):
    assert extract_channel_tag(body) == expected


@pytest.mark.parametrize("body", ["hello there", "", "# nothing", "#general", "  #general  "])
def test_extract_channel_tag_requires_tag_and_text(body):
    with pytest.raises(Malformed):
        extract_channel_tag(body)


def test_phone_helpers():
    assert digits("+1 (555) 123-4567") == "15551234567"
    assert digits(None) == ""
    assert dialable("+1 (555) 123-4567") == "+15551234567"
    assert dialable("555.123.4567") == "5551234567"


@pytest.mark.parametrize(
    "sender, stored, expected",
    [
        ("+1 (555) 123-4567", "5551234567", True),
        ("+15551234567", "+1 555 123 4567", True),
        ("+15559999999", "5551234567", False),
        ("+15551234567", "", False),
        ("+15551234567", None, False),
    ],
)
def test_phone_matches(sender, stored, expected):
    assert phone_matches(sender, stored) is expected


def test_inbound_fields_use_twilio_names():
    sms = inbound()

    assert sms.account_sid == "AC123"
    assert sms.from_ == "+15551234567"
    assert sms.to == "+15551230000"
    assert sms.body == "#general hello there"


def test_inbound_posted_as_sender(provisioned, router, directory):
    posted = router.handle(inbound(sender="+1 (555) 123-4567"))

    assert posted.channel == "general"
    assert directory.posted == [
        {
            "channel": "#general",
            "text": "hello there",
            "username": "Alice (via SMS)",
            "icon_url": "https://avatars.example/alice_192.png",
        }
    ]


def test_inbound_unknown_account(provisioned, router, directory):
    with pytest.raises(NotFound) as exc:
        router.handle(inbound(account="AC999"))

    assert "AC999" in exc.value.message
    assert "+15551230000" in exc.value.message
    assert directory.posted == []


def test_inbound_unknown_sender(provisioned, router, directory):
    with pytest.raises(Unauthorized) as exc:
        router.handle(inbound(sender="+1 (555) 999-0000"))

    assert exc.value.message == "Unknown source phone number: 15559990000"
    assert directory.posted == []


def test_inbound_without_tag(provisioned, router, directory):
    with pytest.raises(Malformed) as exc:
        router.handle(inbound(body="hello there"))

    assert exc.value.context == {"team": "T1", "user": "U1"}
    assert directory.posted == []


def test_inbound_tag_without_text(provisioned, router, directory):
    with pytest.raises(Malformed) as exc:
        router.handle(inbound(body="#general"))

    assert exc.value.context == {"channel": "general", "team": "T1", "user": "U1"}
    assert directory.posted == []


def test_twiml_reply():
    assert "<Message>" not in twiml_reply()
    assert "<Message>Include a #channel</Message>" in twiml_reply("Include a #channel")


def test_send_sms_uses_tenant_number(store, provisioned, gateway):
    sid = send_sms(store, gateway, provisioned, "+15550001111", "hello")

    assert sid == "SM0001"
    assert gateway.sent == [
        {"account": "AC123", "from": "+15551230000", "to": "+15550001111", "body": "hello"}
    ]


def test_send_sms_unknown_team(store, gateway):
    with pytest.raises(NotFound):
        send_sms(store, gateway, "T404", "+15550001111", "hello")


def test_send_sms_unprovisioned(store, installed, gateway):
    with pytest.raises(NotProvisioned):
        send_sms(store, gateway, installed, "+15550001111", "hello")
    assert gateway.sent == []
