"""
Tests for Layer 3 — validation order, sender profiles, transport failures
and log redaction.
"""
import base64
import logging
import re
import smtplib
import threading
from datetime import datetime

import pytest

from config import Settings, SenderProfile
from conftest import TEST_ENV, TransportRecorder
from layer3_delivery import DeliveryDispatcher, DeliveryRequest, MAX_DOCUMENT_BYTES, redact_fields
from layer3_delivery.message import build_subject, build_text_body

PDF = b"%PDF-1.4 fake document"
FIXED_NOW = datetime(2024, 5, 17, 8, 45)


def make_request(**overrides):
    fields = dict(document=PDF, filename="cedula_Ana_2024-05-17_08-45.pdf", client_name="Ana Ruiz")
    fields.update(overrides)
    return DeliveryRequest(**fields)


@pytest.fixture
def recorder():
    return TransportRecorder()


@pytest.fixture
def dispatcher(settings, recorder):
    return DeliveryDispatcher(settings, transport_factory=recorder, clock=lambda: FIXED_NOW)


class TestSenderProfiles:
    """Profile resolution from configuration."""

    def test_secret_whitespace_stripped(self, settings):
        assert settings.default_profile.secret == "abcdefghijklmnop"

    def test_named_profile_case_insensitive(self, settings):
        profile = settings.resolve_sender("  HostessVIP ")
        assert profile.user == "hostess@example.com"
        assert profile.secret == "hostesspass"

    def test_named_profile_falls_back_field_by_field(self, settings):
        profile = settings.resolve_sender("hostessvip")
        assert profile.from_name == "Lector Cedulas"

    def test_unknown_key_uses_default(self, settings):
        assert settings.resolve_sender("nobody") == settings.default_profile
        assert settings.resolve_sender(None) == settings.default_profile

    def test_repr_hides_secret(self, settings):
        assert "abcdefgh" not in repr(settings.default_profile)
        assert "secret=present" in repr(settings.default_profile)

    def test_tls_verification_on_by_default(self, settings):
        assert settings.smtp_tls_verify is True

    def test_tls_verification_opt_out(self):
        assert Settings.from_env({**TEST_ENV, 'SMTP_TLS_VERIFY': 'false'}).smtp_tls_verify is False


class TestValidationOrder:
    """Fail-fast ordered validation."""

    def test_missing_filename_wins_over_size(self, dispatcher, recorder):
        outcome = dispatcher.send(make_request(document=b"x" * (MAX_DOCUMENT_BYTES + 1), filename=""))
        assert outcome.error_code == "MISSING_FIELDS"
        assert outcome.status_code == 400
        assert recorder.transports == []

    def test_missing_document(self, dispatcher, recorder):
        outcome = dispatcher.send(make_request(document=b""))
        assert (outcome.ok, outcome.status_code, outcome.error_code) == (False, 400, "MISSING_FIELDS")

    def test_payload_too_large_skips_profile_resolution(self, dispatcher, recorder, monitor_resolution):
        outcome = dispatcher.send(make_request(document=b"x" * (9 * 1024 * 1024)))
        assert (outcome.status_code, outcome.error_code) == (413, "PAYLOAD_TOO_LARGE")
        assert monitor_resolution == []
        assert recorder.transports == []

    def test_exactly_eight_mib_allowed(self, dispatcher, recorder):
        outcome = dispatcher.send(make_request(document=b"x" * MAX_DOCUMENT_BYTES))
        assert outcome.ok

    @pytest.mark.parametrize("to", ["ana", "ana@", "ana@example", "@example.com", "ana@@example", "a na@example.com"])
    def test_invalid_recipient_never_opens_transport(self, dispatcher, recorder, to):
        outcome = dispatcher.send(make_request(to=to))
        assert (outcome.status_code, outcome.error_code) == (400, "INVALID_RECIPIENT")
        assert recorder.transports == []

    def test_missing_recipient(self, env, recorder):
        env.pop('EMAIL_TO')
        dispatcher = DeliveryDispatcher(Settings.from_env(env), transport_factory=recorder)
        outcome = dispatcher.send(make_request())
        assert outcome.error_code == "MISSING_RECIPIENT"
        assert recorder.transports == []

    def test_config_checked_before_recipient(self, env, recorder):
        env.pop('SMTP_HOST')
        dispatcher = DeliveryDispatcher(Settings.from_env(env), transport_factory=recorder)
        outcome = dispatcher.send(make_request(to="not-an-address"))
        assert (outcome.status_code, outcome.error_code) == (400, "INCOMPLETE_SERVER_CONFIG")

    def test_unknown_sender_with_incomplete_default(self, env, recorder):
        env.pop('SMTP_PASS')
        dispatcher = DeliveryDispatcher(Settings.from_env(env), transport_factory=recorder)
        outcome = dispatcher.send(make_request(sender_key="unknown"))
        assert (outcome.status_code, outcome.error_code) == (400, "INCOMPLETE_SERVER_CONFIG")
        assert recorder.transports == []

    def test_whitespace_only_secret_is_missing(self, env, recorder):
        env['SMTP_PASS'] = "  \t "
        dispatcher = DeliveryDispatcher(Settings.from_env(env), transport_factory=recorder)
        assert dispatcher.send(make_request()).error_code == "INCOMPLETE_SERVER_CONFIG"

    @pytest.mark.parametrize("field, value", [
        ("subject", "Hola\r\nBcc: x@evil.com"),
        ("subject", "Hola\nmundo"),
        ("filename", "cedula.pdf\r\nX-Injected: 1"),
    ])
    def test_header_line_break_is_malformed(self, dispatcher, recorder, field, value):
        outcome = dispatcher.send(make_request(**{field: value}))
        assert (outcome.ok, outcome.status_code, outcome.error_code) == (False, 400, "MALFORMED_REQUEST")
        assert recorder.transports == []

    def test_header_line_break_in_payload(self, dispatcher, recorder):
        outcome = dispatcher.handle_payload({
            "pdfBase64": base64.b64encode(PDF).decode(),
            "filename": "a.pdf",
            "subject": "Hola\r\nBcc: x@evil.com",
        })
        assert (outcome.status_code, outcome.error_code) == (400, "MALFORMED_REQUEST")
        assert recorder.transports == []

    def test_blank_from_address_is_missing(self, recorder):
        settings = Settings(
            smtp_host="smtp.example.com",
            smtp_port=587,
            default_profile=SenderProfile(user="ops@example.com", secret="s3cr3t", from_address="   "),
            default_recipient="inbox@example.com",
        )
        outcome = DeliveryDispatcher(settings, transport_factory=recorder).send(make_request())
        assert (outcome.status_code, outcome.error_code) == (400, "MISSING_FROM_ADDRESS")
        assert recorder.transports == []


@pytest.fixture
def monitor_resolution(dispatcher):
    calls = []
    original = dispatcher.resolve_transport

    def spy(sender_key, log):
        calls.append(sender_key)
        return original(sender_key, log)

    dispatcher.resolve_transport = spy
    return calls


class TestDelivery:
    """Transport use and outcomes."""

    def test_success(self, dispatcher, recorder):
        outcome = dispatcher.send(make_request())
        assert outcome.ok and outcome.status_code == 200
        assert re.fullmatch(r"[0-9a-f]{12}", outcome.error_id)

        transport, = recorder.transports
        assert transport.calls == ["open", "verify", "send", "close"]
        assert transport.config.host == "smtp.example.com"
        assert transport.config.port == 587
        assert not transport.config.implicit_tls

    def test_message_defaults(self, dispatcher, recorder):
        dispatcher.send(make_request())
        message = recorder.transports[0].sent[0]
        assert message["Subject"] == "Cedula - Ana Ruiz - 2024-05-17 08:45"
        assert message["To"] == "inbox@example.com"
        assert message["From"] == "Lector Cedulas <ops@example.com>"

        attachment, = list(message.iter_attachments())
        assert attachment.get_content_type() == "application/pdf"
        assert attachment.get_filename() == "cedula_Ana_2024-05-17_08-45.pdf"
        assert attachment.get_content() == PDF

        body = message.get_body(preferencelist=("plain",)).get_content()
        assert "Ana Ruiz" in body and "2024-05-17 08:45" in body

    def test_overrides(self, dispatcher, recorder):
        dispatcher.send(make_request(to="other@example.org", subject="Hola", text="Cuerpo",
                                     html="<p>Cuerpo</p>"))
        message = recorder.transports[0].sent[0]
        assert message["Subject"] == "Hola"
        assert message["To"] == "other@example.org"
        assert message.get_body(preferencelist=("html",)).get_content().strip() == "<p>Cuerpo</p>"

    def test_client_name_line_breaks_collapsed(self, dispatcher, recorder):
        outcome = dispatcher.send(make_request(client_name="Ana\r\nRuiz"))
        assert outcome.ok
        assert recorder.transports[0].sent[0]["Subject"] == "Cedula - Ana Ruiz - 2024-05-17 08:45"

    def test_default_subject_without_client(self):
        assert build_subject("  ", FIXED_NOW) == "Cedula - Cliente - 2024-05-17 08:45"
        assert "Cliente" in build_text_body(None, FIXED_NOW)

    def test_sender_profile_credentials(self, dispatcher, recorder):
        dispatcher.send(make_request(sender_key="HOSTESSVIP"))
        config = recorder.transports[0].config
        assert (config.user, config.secret) == ("hostess@example.com", "hostesspass")
        assert recorder.transports[0].sent[0]["From"] == "Lector Cedulas <hostess@example.com>"

    def test_implicit_tls_port(self, env, recorder):
        env['SMTP_PORT'] = '465'
        dispatcher = DeliveryDispatcher(Settings.from_env(env), transport_factory=recorder)
        dispatcher.send(make_request())
        assert recorder.transports[0].config.implicit_tls

    @pytest.mark.parametrize("step", ["open", "verify"])
    def test_verification_failure_is_bad_gateway(self, settings, step):
        recorder = TransportRecorder(fail_on=step)
        outcome = DeliveryDispatcher(settings, transport_factory=recorder).send(make_request())
        assert (outcome.ok, outcome.status_code, outcome.error_code) == (False, 502, "TRANSPORT_VERIFY_FAILED")
        assert recorder.transports[0].calls[-1] == "close"
        assert "send" not in recorder.transports[0].calls

    def test_send_failure_is_server_error(self, settings):
        recorder = TransportRecorder(fail_on="send")
        outcome = DeliveryDispatcher(settings, transport_factory=recorder).send(make_request())
        assert (outcome.status_code, outcome.error_code) == (500, "SEND_FAILED")
        assert recorder.transports[0].calls == ["open", "verify", "send", "close"]

    def test_unexpected_error_is_contained(self, settings):
        def broken_factory(config, log):
            raise RuntimeError("boom")

        outcome = DeliveryDispatcher(settings, transport_factory=broken_factory).send(make_request())
        assert (outcome.ok, outcome.status_code, outcome.error_code) == (False, 500, "UNEXPECTED_ERROR")
        assert outcome.error_id

    def test_transport_closed_on_abort(self, settings):
        recorder = TransportRecorder()

        class Abort(BaseException):
            pass

        def factory(config, log):
            transport = recorder(config, log)

            def abort(message):
                transport.calls.append("send")
                raise Abort()

            transport.send = abort
            return transport

        with pytest.raises(Abort):
            DeliveryDispatcher(settings, transport_factory=factory).send(make_request())
        assert recorder.transports[0].calls[-1] == "close"

    def test_concurrent_dispatches_do_not_share_credentials(self, settings, recorder):
        dispatcher = DeliveryDispatcher(settings, transport_factory=recorder)
        barrier = threading.Barrier(2)
        outcomes = {}

        original_factory = dispatcher.transport_factory

        def synchronized_factory(config, log):
            barrier.wait(timeout=5)
            return original_factory(config, log)

        dispatcher.transport_factory = synchronized_factory

        def run(key):
            outcomes[key] = dispatcher.send(make_request(sender_key=key))

        threads = [threading.Thread(target=run, args=(key,)) for key in ("hostessvip", "")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert all(outcome.ok for outcome in outcomes.values())
        by_user = {t.config.user: t for t in recorder.transports}
        assert by_user["hostess@example.com"].config.secret == "hostesspass"
        assert by_user["ops@example.com"].config.secret == "abcdefghijklmnop"
        assert by_user["hostess@example.com"].sent[0]["From"].endswith("<hostess@example.com>")
        assert by_user["ops@example.com"].sent[0]["From"].endswith("<ops@example.com>")


class TestPayloadParsing:
    """JSON body to request."""

    def test_missing_pdf(self, dispatcher, recorder):
        outcome = dispatcher.handle_payload({"filename": "a.pdf"})
        assert (outcome.status_code, outcome.error_code) == (400, "MISSING_FIELDS")
        assert recorder.transports == []

    def test_not_an_object(self, dispatcher):
        assert dispatcher.handle_payload(None).error_code == "MALFORMED_REQUEST"
        assert dispatcher.handle_payload(["x"]).error_code == "MALFORMED_REQUEST"

    def test_invalid_base64(self, dispatcher):
        outcome = dispatcher.handle_payload({"pdfBase64": "***not base64***", "filename": "a.pdf"})
        assert (outcome.status_code, outcome.error_code) == (400, "MALFORMED_REQUEST")

    def test_non_string_fields_ignored(self, dispatcher, recorder):
        payload = {
            "pdfBase64": base64.b64encode(PDF).decode(),
            "filename": "a.pdf",
            "clientName": 42,
            "to": ["x@example.com"],
        }
        outcome = dispatcher.handle_payload(payload)
        assert outcome.ok
        assert recorder.transports[0].sent[0]["To"] == "inbox@example.com"

    def test_data_url_prefix_accepted(self, dispatcher, recorder):
        payload = {
            "pdfBase64": "data:application/pdf;base64," + base64.b64encode(PDF).decode(),
            "filename": "a.pdf",
        }
        assert dispatcher.handle_payload(payload).ok


class TestRedaction:
    """Secrets never reach the logs."""

    def test_redact_fields(self):
        fields = redact_fields({"secret": "s3cr3t", "smtp_pass": "", "user": "ops"})
        assert fields == {"secret": "present", "smtp_pass": "missing", "user": "ops"}

    def test_logs_carry_error_id_and_no_secret(self, dispatcher, caplog):
        caplog.set_level(logging.DEBUG)
        outcome = dispatcher.send(make_request())
        records = [record for record in caplog.records if record.name.startswith("layer3_delivery")]
        assert len(records) >= 5
        assert {record.name for record in records} >= {"layer3_delivery.dispatcher", "layer3_delivery.transport"}
        assert all(record.getMessage().startswith(f"[{outcome.error_id}]") for record in records)
        assert all(record.error_id == outcome.error_id for record in records)
        assert not any("abcdefghijklmnop" in record.getMessage() for record in caplog.records)
        assert not any("abcd efgh" in record.getMessage() for record in caplog.records)

    def test_failure_logs_share_error_id(self, settings, caplog):
        caplog.set_level(logging.DEBUG)
        recorder = TransportRecorder(fail_on="verify")
        outcome = DeliveryDispatcher(settings, transport_factory=recorder).send(make_request())
        tagged = [r for r in caplog.records if getattr(r, "error_id", None) == outcome.error_id]
        assert any("TRANSPORT_VERIFY_FAILED" in r.getMessage() for r in tagged)

    def test_profile_repr_redacted(self):
        assert "hunter2" not in repr(SenderProfile(user="u", secret="hunter2"))

    def test_smtp_transport_logs_carry_error_id(self, env, caplog, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError(111, "Connection refused")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        env.update({'SMTP_HOST': '127.0.0.1', 'SMTP_PORT': '2525', 'SMTP_TLS_VERIFY': 'false'})
        dispatcher = DeliveryDispatcher(Settings.from_env(env))

        caplog.set_level(logging.DEBUG)
        caplog.clear()
        outcome = dispatcher.send(make_request())

        assert (outcome.status_code, outcome.error_code) == (502, "TRANSPORT_VERIFY_FAILED")
        transport_records = [r for r in caplog.records if r.name == "layer3_delivery.transport"]
        assert any("verification disabled" in r.getMessage() for r in transport_records)
        assert any("Connecting to 127.0.0.1:2525" in r.getMessage() for r in transport_records)
        delivery_records = [r for r in caplog.records if r.name.startswith("layer3_delivery")]
        assert all(getattr(r, "error_id", None) == outcome.error_id for r in delivery_records)
