"""
auth/mailer.py -- Mail dispatch for passwordless credentials.

Two transports behind one method, send(MailMessage):

  LogMailer  -- development default. Writes the message to the
                "tokenward.mail" logger and keeps the most recent messages in
                an in-memory outbox, so tests (and a developer at a terminal)
                can read the link or code that would have been mailed.

  SmtpMailer -- stdlib smtplib over STARTTLS or implicit TLS. Raises
                MailDeliveryError on any SMTP, TLS, or socket failure; the
                passwordless service turns that into DependencyFailure.

Message bodies are rendered from Jinja2 templates in auth/templates/ with
autoescaping on: the recipient address and the link are user-influenced.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from collections import deque
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader, select_autoescape

from auth.models import MailMessage
from core.config import Settings

logger = logging.getLogger("tokenward.mail")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
)


class MailDeliveryError(Exception):
    """The transport failed to hand the message off."""


def redact_email(email: str) -> str:
    """a***@example.com -- enough to correlate log lines without logging PII."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def magic_link_url(frontend_url: str, token: str) -> str:
    return f"{frontend_url.rstrip('/')}/auth/verify?{urlencode({'token': token})}"


def render_magic_link(settings: Settings, to: str, token: str) -> MailMessage:
    link = magic_link_url(settings.frontend_url, token)
    minutes = max(1, settings.passwordless_ttl_seconds // 60)
    html = _templates.get_template("magic_link.html").render(
        email=to, link=link, minutes=minutes, brand=settings.mail_from_name
    )
    text = f"Sign in to {settings.mail_from_name}: {link}\nThis link expires in {minutes} minutes."
    return MailMessage(to=to, subject="Your magic link to sign in", html=html, text=text, tags=["magic_link"])


def render_otp(settings: Settings, to: str, code: str) -> MailMessage:
    minutes = max(1, settings.passwordless_ttl_seconds // 60)
    html = _templates.get_template("otp.html").render(
        email=to, code=code, minutes=minutes, brand=settings.mail_from_name
    )
    text = f"Your {settings.mail_from_name} code is {code}. It expires in {minutes} minutes."
    return MailMessage(to=to, subject="Your one-time sign-in code", html=html, text=text, tags=["otp"])


def render_welcome(settings: Settings, to: str, first_name: str | None = None) -> MailMessage:
    html = _templates.get_template("welcome.html").render(
        name=first_name or to.split("@", 1)[0], url=settings.frontend_url, brand=settings.mail_from_name
    )
    return MailMessage(to=to, subject=f"Welcome to {settings.mail_from_name}", html=html, tags=["welcome"])


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class LogMailer:
    """Logs messages instead of sending them."""

    def __init__(self, outbox_size: int = 100) -> None:
        self.outbox: deque[MailMessage] = deque(maxlen=outbox_size)

    def send(self, message: MailMessage) -> None:
        self.outbox.append(message)
        logger.info("Mail (log transport) to=%s subject=%r tags=%s", redact_email(message.to), message.subject, message.tags)
        if message.text:
            logger.debug("Mail body: %s", message.text)

    def last_to(self, email: str) -> MailMessage | None:
        """Most recent message addressed to email, or None."""
        for message in reversed(self.outbox):
            if message.to == email:
                return message
        return None


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str,
        from_name: str,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    def send(self, message: MailMessage) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = message.to
        if message.text:
            msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_email, [message.to], msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    self._login(server)
                    server.sendmail(self.from_email, [message.to], msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error("Mail to %s failed: %s: %s", redact_email(message.to), type(exc).__name__, exc)
            raise MailDeliveryError(str(exc)) from exc
        logger.info("Mail sent to=%s subject=%r", redact_email(message.to), message.subject)

    def _login(self, server: smtplib.SMTP) -> None:
        if self.user and self.password:
            server.login(self.user, self.password)


def build_mailer(settings: Settings) -> LogMailer | SmtpMailer:
    if settings.mail_provider == "smtp":
        return SmtpMailer(
            settings.smtp_host,
            settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from_email,
            from_name=settings.mail_from_name,
        )
    return LogMailer()
