"""Tests for EmailService rendering/transport and best-effort delivery."""

import smtplib
from datetime import datetime, timezone

from authcore.service.email import EmailService, send_best_effort

from tests.support import RecordingNotifier


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


class RejectingSMTP(FakeSMTP):
    def login(self, user, password):
        raise smtplib.SMTPAuthenticationError(535, b"bad credentials")


def _configured(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="hunter2",
        from_email="no-reply@example.com",
        base_url="https://auth.example.com/",
    )
    options.update(overrides)
    return EmailService(**options)


class TestEmailService:
    def test_unconfigured_service_logs_and_reports_success(self):
        service = EmailService()
        assert service.is_configured is False
        assert service.send_password_changed_email("user@example.com") is True

    def test_reset_mail_carries_link(self, monkeypatch):
        FakeSMTP.instances = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

        assert _configured().send_password_reset_email("user@example.com", "tok123") is True

        server = FakeSMTP.instances[0]
        assert server.started_tls is True
        assert server.logged_in == ("mailer", "hunter2")
        _, to_addr, message = server.sent[0]
        assert to_addr == "user@example.com"
        assert "https://auth.example.com/reset-password?token=tok123" in message
        assert "60 minutes" in message

    def test_ssl_transport_when_tls_disabled(self, monkeypatch):
        FakeSMTP.instances = []
        monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)

        service = _configured(smtp_use_tls=False, smtp_port=465)
        assert service.send_verification_email("user@example.com", "abc") is True
        assert FakeSMTP.instances[0].started_tls is False
        assert "/verify-email?token=abc" in FakeSMTP.instances[0].sent[0][2]

    def test_auth_failure_returns_false(self, monkeypatch):
        monkeypatch.setattr(smtplib, "SMTP", RejectingSMTP)
        assert _configured().send_password_changed_email("user@example.com") is False

    def test_connection_failure_returns_false(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        assert _configured().send_password_changed_email("user@example.com") is False

    def test_new_device_alert_content_is_escaped(self):
        service = EmailService()
        html_body, text_body = service._render(
            "New sign-in", ["Device: <script>x</script>"], link="https://a.example/?a=1&b=2"
        )
        assert "<script>" not in html_body
        assert "&amp;b=2" in html_body
        assert "Device: <script>x</script>" in text_body

    def test_new_device_alert_mentions_device(self, monkeypatch):
        captured = {}

        def capture(to_email, subject, html_body, text_body=None):
            captured.update(subject=subject, text=text_body)
            return True

        service = EmailService(base_url="https://auth.example.com")
        monkeypatch.setattr(service, "_send_email", capture)
        service.send_new_device_alert(
            "user@example.com",
            device_info={"browser": "Firefox", "os": "Windows"},
            ip_address="9.9.9.9",
            timestamp=datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc),
        )

        assert captured["subject"] == "New sign-in detected"
        assert "Firefox on Windows" in captured["text"]
        assert "9.9.9.9" in captured["text"]
        assert "2024-03-01 08:30 UTC" in captured["text"]
        assert "https://auth.example.com/account/sessions" in captured["text"]


class TestSendBestEffort:
    async def test_success(self):
        notifier = RecordingNotifier()
        assert await send_best_effort(
            "password_changed", notifier.send_password_changed_email, "a@example.com"
        ) is True
        assert notifier.kinds() == ["password_changed"]

    async def test_exception_is_swallowed(self):
        notifier = RecordingNotifier(fail=True)
        delivered = await send_best_effort(
            "password_changed", notifier.send_password_changed_email, "a@example.com"
        )
        assert delivered is False

    async def test_false_return_is_reported(self):
        assert await send_best_effort("x", lambda: False) is False
