import email
import smtplib

import pytest

from murmur.service import email as email_module
from murmur.service.email import EmailService


class FakeSMTP:
    """Stands in for ``smtplib.SMTP``; records the session and can fail at any step."""

    instances = []

    def __init__(self, host, port, timeout=None, *, fail_on=None, error=None):
        self.host = host
        self.port = port
        self.fail_on = fail_on
        self.error = error
        self.calls = []
        self.sent = []
        FakeSMTP.instances.append(self)

    def _step(self, name):
        self.calls.append(name)
        if self.fail_on == name:
            raise self.error

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def starttls(self, context=None):
        self._step("starttls")

    def login(self, user, password):
        self._step("login")

    def sendmail(self, from_addr, to_addr, message):
        self._step("sendmail")
        self.sent.append((from_addr, to_addr, message))


def _install(monkeypatch, **failure):
    FakeSMTP.instances = []
    monkeypatch.setattr(
        email_module.smtplib,
        "SMTP",
        lambda host, port, timeout=None: FakeSMTP(host, port, timeout, **failure),
    )


def _configured():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="hunter2",
        from_email="noreply@murmur.test",
        base_url="https://murmur.test/",
    )


def _bodies(raw):
    message = email.message_from_string(raw)
    return {
        part.get_content_type(): part.get_payload(decode=True).decode()
        for part in message.walk()
        if not part.is_multipart()
    }


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    def _no_smtp(*args, **kwargs):
        raise AssertionError("SMTP must not be used without a host")

    monkeypatch.setattr(email_module.smtplib, "SMTP", _no_smtp)
    service = EmailService(smtp_host=None)

    assert service.is_configured is False
    assert service.send_two_factor_code("alice@example.com", "123456") is True
    assert service.send_email_verification("alice@example.com", "tok") is True


def test_two_factor_code_is_sent_over_starttls(monkeypatch):
    _install(monkeypatch)

    assert _configured().send_two_factor_code("alice@example.com", "654321", ttl_minutes=10)

    (smtp,) = FakeSMTP.instances
    assert (smtp.host, smtp.port) == ("smtp.example.com", 587)
    assert smtp.calls == ["starttls", "login", "sendmail"]
    from_addr, to_addr, raw = smtp.sent[0]
    assert (from_addr, to_addr) == ("noreply@murmur.test", "alice@example.com")
    bodies = _bodies(raw)
    assert "654321" in bodies["text/plain"]
    assert "<h1>Your sign-in code</h1>" in bodies["text/html"]
    assert '<p class="code">654321</p>' in bodies["text/html"]


def test_verification_link_uses_base_url(monkeypatch):
    _install(monkeypatch)

    assert _configured().send_email_verification("alice@example.com", "abc123")

    bodies = _bodies(FakeSMTP.instances[0].sent[0][2])
    assert "https://murmur.test/v1/auth/verify-email/abc123" in bodies["text/plain"]
    assert "<p>Murmur</p>" in bodies["text/html"]


@pytest.mark.parametrize(
    "step, error",
    [
        ("login", smtplib.SMTPAuthenticationError(535, b"bad credentials")),
        ("sendmail", smtplib.SMTPRecipientsRefused({"alice@example.com": (550, b"no such user")})),
        ("sendmail", smtplib.SMTPDataError(554, b"rejected")),
        ("starttls", ConnectionRefusedError("refused")),
    ],
)
def test_delivery_failures_return_false(monkeypatch, step, error):
    _install(monkeypatch, fail_on=step, error=error)

    assert _configured().send_two_factor_code("alice@example.com", "111111") is False
    assert FakeSMTP.instances[0].calls[-1] == step


def test_connection_failure_returns_false(monkeypatch):
    def _refuse(*args, **kwargs):
        raise OSError("network unreachable")

    monkeypatch.setattr(email_module.smtplib, "SMTP", _refuse)

    assert _configured().send_two_factor_enabled("alice@example.com") is False


def test_redacted_address_keeps_domain_only():
    service = EmailService()
    assert service._redact_email("alice@example.com") == "al***@example.com"
    assert service._redact_email("not-an-address") == "redacted"
