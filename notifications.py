import logging
import smtplib
import time
from dataclasses import dataclass
from email.message import EmailMessage as MimeMessage
from pathlib import Path
from typing import Callable, Optional, Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape
from tenacity import RetryError, Retrying, stop_after_attempt, wait_exponential

from config import Settings, get_settings
from errors import ExternalServiceError

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str


class Mailer(Protocol):
    def send(self, message: EmailMessage) -> None: ...


def format_currency(cents: int, include_cents: bool = True) -> str:
    if include_cents:
        return f"{cents / 100:,.2f}"
    return f"{cents / 100:,.0f}"


class EmailRenderer:
    def __init__(self, templates_dir: Path = TEMPLATES_DIR) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html"]),
        )
        self.env.filters["currency"] = format_currency

    def render(self, template_name: str, **context: object) -> str:
        return self.env.get_template(template_name).render(**context)


class SmtpMailer:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def send(self, message: EmailMessage) -> None:
        mime = MimeMessage()
        mime["From"] = self.settings.mail_from
        mime["To"] = message.to
        mime["Subject"] = message.subject
        mime.set_content("This message requires an HTML capable mail client.")
        mime.add_alternative(message.body, subtype="html")
        try:
            with smtplib.SMTP(
                self.settings.smtp_host, self.settings.smtp_port, timeout=30
            ) as smtp:
                if self.settings.smtp_username:
                    smtp.starttls()
                    smtp.login(self.settings.smtp_username, self.settings.smtp_password or "")
                smtp.send_message(mime)
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalServiceError(f"SMTP delivery failed: {exc}") from exc


def send_with_retry(
    mailer: Mailer,
    message: EmailMessage,
    *,
    max_attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts or get_settings().email_max_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        sleep=sleep,
    )
    try:
        retrying(mailer.send, message)
    except RetryError as exc:
        error = exc.last_attempt.exception()
        logger.error(f"email_failed: to={message.to} subject={message.subject!r} error={error!r}")
        raise ExternalServiceError(f"Email to {message.to} failed") from error
