"""
test_templates_providers.py — Tests for message templates and the channel
providers.

Covers:
    • Template registry and start-up placeholder checks
    • Payload validation (unknown / missing fields)
    • Per-channel rendering (SMS length cap, email subject + HTML)
    • Phone normalisation and SMS segment estimation
    • Twilio SMS / WhatsApp and Resend email over a mocked HTTP transport
    • HTTP error classification (transient vs permanent)
    • Provider registry construction from settings

Run with:
    pytest tests/test_templates_providers.py -v
"""

from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from backend.notifier.channels.base import SIMULATION, ChannelProvider, request
from backend.notifier.channels.email import ResendEmailProvider
from backend.notifier.channels.registry import build_providers, needs_http
from backend.notifier.channels.sms import (
    TwilioSMSProvider,
    estimate_segments,
    is_valid_phone,
    normalize_phone,
)
from backend.notifier.channels.whatsapp import TwilioWhatsAppProvider
from backend.notifier.core.errors import (
    ProviderPermanentError,
    ProviderTransientError,
    ValidationError,
)
from backend.notifier.scheduling.models import Channel, NotificationType
from backend.notifier.scheduling.templates import (
    SMS_MAX_CHARS,
    TEMPLATES,
    ChoreReminder,
    MessageTemplate,
    RenderedContent,
    TemplateError,
    build_payload,
    notification_type_for,
    register,
    render,
)

from fakes import REMINDER_DATA, make_settings

TWILIO_BASE = "https://twilio.test/2010-04-01"
RESEND_BASE = "https://resend.test"


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def _sms_provider(handler, cls=TwilioSMSProvider, **kwargs) -> TwilioSMSProvider:
    return cls(
        mode="twilio",
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550000000",
        base_url=TWILIO_BASE,
        client=_client(handler),
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Templates
# ═══════════════════════════════════════════════════════════════════════════

class TestTemplateRegistry:
    """Test the registry and its start-up checks."""

    def test_builtin_templates_present(self):
        for tid in ("chore_assigned", "chore_reminder", "chore_completed",
                    "chore_approved", "chore_rejected", "digest", "family_update"):
            assert tid in TEMPLATES

    def test_unknown_placeholder_rejected_at_registration(self):
        bad = MessageTemplate(
            template_id="broken",
            payload_type=ChoreReminder,
            subject="{chore_tittle}",
            whatsapp="x",
            sms="x",
            email_text="x",
        )
        with pytest.raises(TemplateError):
            register(bad)
        assert "broken" not in TEMPLATES

    def test_template_notification_types(self):
        assert notification_type_for("chore_reminder") == NotificationType.REMINDER
        assert notification_type_for("digest") == NotificationType.DIGEST
        assert notification_type_for("family_update") == NotificationType.UPDATE

    def test_unknown_template_id(self):
        with pytest.raises(ValidationError):
            render("nope", {}, Channel.SMS)


class TestBuildPayload:
    """Test typed payload construction."""

    def test_defaults_applied(self):
        payload = build_payload("chore_reminder", {"recipient_name": "Sam", "chore_title": "Dishes"})
        assert payload.points == 0
        assert payload.due_in == "soon"

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as exc:
            build_payload("chore_reminder", {**REMINDER_DATA, "colour": "red"})
        assert exc.value.details["field"] == "data"

    def test_missing_field_rejected(self):
        with pytest.raises(ValidationError):
            build_payload("chore_reminder", {"chore_title": "Dishes"})


class TestRender:
    """Test channel variants."""

    def test_sms_variant(self):
        content = render("chore_reminder", REMINDER_DATA, Channel.SMS)
        assert content.body.startswith("ChoreMinder: Reminder")
        assert "Feed the cat" in content.body
        assert content.subject is None

    def test_sms_truncated_to_one_segment(self):
        data = {"recipient_name": "Sam", "family_name": "Lee", "update_text": "x" * 400}
        content = render("family_update", data, Channel.SMS)
        assert len(content.body) == SMS_MAX_CHARS
        assert content.body.endswith("...")

    def test_whatsapp_variant_is_friendly(self):
        content = render("chore_reminder", REMINDER_DATA, Channel.WHATSAPP)
        assert "Hey Sam" in content.body
        assert "due 1 hour" in content.body

    def test_email_has_subject_and_escaped_html(self):
        data = {**REMINDER_DATA, "chore_title": "Tidy <room>"}
        content = render("chore_reminder", data, Channel.EMAIL)
        assert content.subject == "Reminder: Tidy <room> is due 1 hour"
        assert "Tidy &lt;room&gt;" in content.html
        assert "Tidy <room>" in content.body


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Phone helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestPhoneHelpers:
    """Test E.164 normalisation and segment counting."""

    def test_normalize_north_american(self):
        assert normalize_phone("(555) 123-4567") == "+15551234567"

    def test_normalize_keeps_country_code(self):
        assert normalize_phone("+44 20 7946 0958") == "+442079460958"

    def test_validity_bounds(self):
        assert is_valid_phone("+15551234567") is True
        assert is_valid_phone("12345") is False
        assert is_valid_phone("") is False

    def test_segments(self):
        assert estimate_segments("a" * 160) == 1
        assert estimate_segments("a" * 161) == 2
        assert estimate_segments("é" * 70) == 1
        assert estimate_segments("é" * 71) == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Providers over HTTP
# ═══════════════════════════════════════════════════════════════════════════

class TestTwilioSMSProvider:
    """Test the Twilio SMS provider against a mocked transport."""

    def test_send_posts_form(self):
        seen = {}

        def handler(req: httpx.Request) -> httpx.Response:
            seen["url"] = str(req.url)
            seen["form"] = parse_qs(req.content.decode())
            seen["auth"] = req.headers.get("authorization", "")
            return httpx.Response(201, json={"sid": "SM42", "status": "queued"})

        provider = _sms_provider(handler, status_callback_url="https://cb.test/hook")
        result = provider.send("(555) 123-4567", RenderedContent(body="hello"))

        assert result.provider_message_id == "SM42"
        assert seen["url"] == f"{TWILIO_BASE}/Accounts/AC123/Messages.json"
        assert seen["form"]["To"] == ["+15551234567"]
        assert seen["form"]["From"] == ["+15550000000"]
        assert seen["form"]["StatusCallback"] == ["https://cb.test/hook"]
        assert seen["auth"].startswith("Basic ")

    def test_invalid_number_is_permanent(self):
        def handler(req):
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        with pytest.raises(ProviderPermanentError) as exc:
            _sms_provider(handler).send("+15551234567", RenderedContent(body="hi"))
        assert exc.value.provider_code == "21211"
        assert exc.value.transient is False

    def test_server_error_is_transient(self):
        with pytest.raises(ProviderTransientError):
            _sms_provider(lambda req: httpx.Response(503, text="down")).send(
                "+15551234567", RenderedContent(body="hi")
            )

    def test_rate_limited_is_transient(self):
        with pytest.raises(ProviderTransientError) as exc:
            _sms_provider(lambda req: httpx.Response(429, json={"code": 20429})).send(
                "+15551234567", RenderedContent(body="hi")
            )
        assert exc.value.provider_code == "20429"

    def test_timeout_is_transient(self):
        def handler(req):
            raise httpx.ConnectTimeout("timed out", request=req)

        with pytest.raises(ProviderTransientError) as exc:
            _sms_provider(handler).send("+15551234567", RenderedContent(body="hi"))
        assert exc.value.provider_code == "timeout"

    def test_live_mode_requires_credentials(self):
        with pytest.raises(ValueError):
            TwilioSMSProvider(mode="twilio", account_sid="AC123")

    def test_simulation_returns_synthetic_id(self):
        provider = TwilioSMSProvider()
        result = provider.send("+15551234567", RenderedContent(body="hi"))
        assert provider.mode == SIMULATION
        assert result.provider_message_id.startswith("SIM-SMS-")
        assert result.raw["segments"] == 1
        assert isinstance(provider, ChannelProvider)


class TestTwilioWhatsAppProvider:
    """Test the WhatsApp prefixing."""

    def test_prefixes_both_numbers(self):
        seen = {}

        def handler(req):
            seen["form"] = parse_qs(req.content.decode())
            return httpx.Response(201, json={"sid": "SM7"})

        provider = _sms_provider(handler, cls=TwilioWhatsAppProvider)
        provider.send("whatsapp:+15551234567", RenderedContent(body="hi"))
        assert seen["form"]["To"] == ["whatsapp:+15551234567"]
        assert seen["form"]["From"] == ["whatsapp:+15550000000"]

    def test_validate_accepts_prefixed_numbers(self):
        provider = TwilioWhatsAppProvider()
        assert provider.validate_address("whatsapp:+15551234567") is True
        assert provider.validate_address("whatsapp:123") is False


class TestResendEmailProvider:
    """Test the Resend email provider."""

    def test_send_posts_json_with_bearer(self):
        seen = {}

        def handler(req):
            seen["body"] = json.loads(req.content)
            seen["auth"] = req.headers["authorization"]
            seen["url"] = str(req.url)
            return httpx.Response(200, json={"id": "em-1"})

        provider = ResendEmailProvider(
            mode="resend", api_key="re_test", base_url=RESEND_BASE, client=_client(handler),
        )
        content = render("chore_reminder", REMINDER_DATA, Channel.EMAIL)
        result = provider.send("sam@example.com", content)

        assert result.provider_message_id == "em-1"
        assert seen["url"] == f"{RESEND_BASE}/emails"
        assert seen["auth"] == "Bearer re_test"
        assert seen["body"]["to"] == ["sam@example.com"]
        assert seen["body"]["subject"] == content.subject
        assert "<div" in seen["body"]["html"]

    def test_validation_error_uses_name_as_code(self):
        def handler(req):
            return httpx.Response(422, json={"name": "validation_error", "message": "bad"})

        provider = ResendEmailProvider(
            mode="resend", api_key="re_test", base_url=RESEND_BASE, client=_client(handler),
        )
        with pytest.raises(ProviderPermanentError) as exc:
            provider.send("sam@example.com", RenderedContent(body="x", subject="y"))
        assert exc.value.provider_code == "validation_error"

    def test_blocklist_by_address_and_domain(self):
        provider = ResendEmailProvider(blocklist=["Blocked@Example.com", "spam.test"])
        assert provider.validate_address("blocked@example.com") is False
        assert provider.validate_address("anyone@spam.test") is False
        assert provider.validate_address("sam@example.com") is True
        assert provider.validate_address("not-an-email") is False


class TestRequestHelper:
    """Test the shared HTTP wrapper."""

    def test_success_passes_through(self):
        client = _client(lambda req: httpx.Response(200, json={"ok": True}))
        response = request(client, Channel.SMS, "GET", "https://x.test/")
        assert response.json() == {"ok": True}

    def test_transport_error_is_transient(self):
        def handler(req):
            raise httpx.ConnectError("refused", request=req)

        with pytest.raises(ProviderTransientError) as exc:
            request(_client(handler), Channel.EMAIL, "POST", "https://x.test/")
        assert exc.value.provider_code == "transport"

    def test_non_json_error_falls_back_to_status(self):
        with pytest.raises(ProviderPermanentError) as exc:
            request(_client(lambda req: httpx.Response(404, text="nope")), Channel.SMS, "GET", "https://x.test/")
        assert exc.value.provider_code == "404"


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestProviderRegistry:
    """Test provider construction from settings."""

    def test_simulation_builds_all_channels(self):
        config = make_settings()
        providers = build_providers(config)
        assert set(providers) == set(Channel)
        assert needs_http(config) is False

    def test_misconfigured_channel_is_left_out(self):
        config = make_settings(SMS_PROVIDER="twilio", TWILIO_ACCOUNT_SID=None)
        with httpx.Client() as client:
            providers = build_providers(config, client)
        assert Channel.SMS not in providers
        assert Channel.EMAIL in providers
        assert needs_http(config) is True

    def test_live_twilio_configured(self):
        config = make_settings(
            SMS_PROVIDER="twilio",
            WHATSAPP_PROVIDER="twilio",
            TWILIO_ACCOUNT_SID="AC1",
            TWILIO_AUTH_TOKEN="tok",
            TWILIO_PHONE_NUMBER="+15550000000",
        )
        with httpx.Client() as client:
            providers = build_providers(config, client)
        assert providers[Channel.SMS].mode == "twilio"
        assert isinstance(providers[Channel.WHATSAPP], TwilioWhatsAppProvider)
        assert providers[Channel.EMAIL].mode == SIMULATION
