import email
import email.policy
import smtplib

import pytest

from authcore.service.email import EmailService, redact_address


class FakeSMTP:
    sent = []
    fail_with = None

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.tls = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        pass

    def sendmail(self, from_addr, to_addr, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        FakeSMTP.sent.append((from_addr, to_addr, message))


@pytest.fixture
def smtp(monkeypatch):
    FakeSMTP.sent = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    yield FakeSMTP
    FakeSMTP.fail_with = None


def configured_service():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
        base_url="https://app.example.com/",
    )


def plain_body(raw: str) -> str:
    parsed = email.message_from_string(raw, policy=email.policy.default)
    return parsed.get_body(("plain",)).get_content()


def test_unconfigured_service_logs_instead_of_sending(smtp):
    service = EmailService()

    assert service.is_configured is False
    assert service.send_password_reset_email("a@example.com", "tok") is True
    assert smtp.sent == []


def test_reset_email_contains_link(smtp):
    assert configured_service().send_password_reset_email("a@example.com", "tok123") is True

    from_addr, to_addr, message = smtp.sent[0]
    assert from_addr == "no-reply@example.com"
    assert to_addr == "a@example.com"
    assert "https://app.example.com/reset-password?token=tok123" in plain_body(message)


def test_verification_link(smtp):
    configured_service().send_email_verification_link("a@example.com", "v1")

    assert "https://app.example.com/verify-email?token=v1" in plain_body(smtp.sent[0][2])


def test_mfa_setup_includes_key(smtp):
    configured_service().send_mfa_setup_email("a@example.com", "data:image/svg+xml;base64,AA", "KEY234")

    assert "Key: KEY234" in plain_body(smtp.sent[0][2])


def test_smtp_failure_returns_false(smtp):
    smtp.fail_with = smtplib.SMTPServerDisconnected("gone")

    assert configured_service().send_mfa_setup_email("a@example.com", "data:x", "SECRET") is False


def test_redact_address():
    assert redact_address("alice@example.com") == "al***@example.com"
    assert redact_address("nonsense") == "redacted"
