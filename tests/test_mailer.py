"""Tests for auth/mailer.py -- message rendering and transports.

Covers:
- magic-link and OTP messages carry the credential in both HTML and text
- templates are autoescaped
- LogMailer keeps an outbox; last_to() finds the newest message
- SmtpMailer speaks STARTTLS or implicit TLS, logs in only with credentials,
  and turns transport errors into MailDeliveryError
- build_mailer() picks the transport from settings
"""

from unittest.mock import MagicMock

import pytest

from auth.mailer import (
    LogMailer,
    MailDeliveryError,
    SmtpMailer,
    redact_email,
    build_mailer,
    magic_link_url,
    render_magic_link,
    render_otp,
    render_welcome,
)
from auth.models import MailMessage
from conftest import make_settings

TOKEN = "ab" * 32


def test_magic_link_url():
    assert magic_link_url("http://app.test/", TOKEN) == f"http://app.test/auth/verify?token={TOKEN}"


def test_render_magic_link():
    settings = make_settings(passwordless_ttl_seconds=600)
    message = render_magic_link(settings, "a@example.com", TOKEN)
    assert message.to == "a@example.com"
    assert message.tags == ["magic_link"]
    assert f"token={TOKEN}" in message.html
    assert f"token={TOKEN}" in message.text
    assert "10 minutes" in message.text


def test_render_otp_keeps_leading_zero():
    message = render_otp(make_settings(), "a@example.com", "045123")
    assert "045123" in message.html
    assert "code is 045123." in message.text


def test_render_welcome_escapes_name():
    message = render_welcome(make_settings(), "a@example.com", "<script>x</script>")
    assert "<script>x</script>" not in message.html
    assert "&lt;script&gt;" in message.html


def test_redact():
    assert redact_email("alice@example.com") == "a***@example.com"
    assert redact_email("garbage") == "redacted"


def test_log_mailer_outbox():
    mailer = LogMailer(outbox_size=2)
    for i in range(3):
        mailer.send(MailMessage(to="a@example.com", subject=f"s{i}", html="<p>hi</p>"))
    assert len(mailer.outbox) == 2
    assert mailer.last_to("a@example.com").subject == "s2"
    assert mailer.last_to("b@example.com") is None


@pytest.fixture
def smtp(monkeypatch):
    smtp_cls = MagicMock()
    ssl_cls = MagicMock()
    monkeypatch.setattr("auth.mailer.smtplib.SMTP", smtp_cls)
    monkeypatch.setattr("auth.mailer.smtplib.SMTP_SSL", ssl_cls)
    return smtp_cls, ssl_cls


def _message() -> MailMessage:
    return MailMessage(to="a@example.com", subject="Hi", html="<p>hi</p>", text="hi")


def test_smtp_starttls_with_login(smtp):
    smtp_cls, ssl_cls = smtp
    mailer = SmtpMailer("mail.test", 587, user="u", password="p", from_email="no@x.test", from_name="X")
    mailer.send(_message())

    server = smtp_cls.return_value.__enter__.return_value
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("u", "p")
    from_addr, to_addrs, body = server.sendmail.call_args.args
    assert from_addr == "no@x.test"
    assert to_addrs == ["a@example.com"]
    assert "Subject: Hi" in body
    ssl_cls.assert_not_called()


def test_smtp_implicit_tls_without_login(smtp):
    smtp_cls, ssl_cls = smtp
    mailer = SmtpMailer("mail.test", 465, use_tls=False, from_email="no@x.test", from_name="X")
    mailer.send(_message())

    server = ssl_cls.return_value.__enter__.return_value
    server.login.assert_not_called()
    server.sendmail.assert_called_once()
    smtp_cls.assert_not_called()


def test_smtp_failure_is_mail_delivery_error(smtp):
    smtp_cls, _ = smtp
    smtp_cls.side_effect = OSError("connection refused")
    mailer = SmtpMailer("mail.test", from_email="no@x.test", from_name="X")
    with pytest.raises(MailDeliveryError):
        mailer.send(_message())


def test_build_mailer():
    assert isinstance(build_mailer(make_settings()), LogMailer)
    smtp_mailer = build_mailer(make_settings(mail_provider="smtp", smtp_host="mail.test", smtp_port=2525))
    assert isinstance(smtp_mailer, SmtpMailer)
    assert smtp_mailer.port == 2525
