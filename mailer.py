import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from errors import ServiceUnavailable
from settings import Settings

log = logging.getLogger(__name__)


class Mailer:
    """SMTP transport; a mailer without a host only logs what it would send."""

    def __init__(self, host: Optional[str], port: int = 587, user: Optional[str] = None,
                 password: Optional[str] = None, timeout: float = 10.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        return cls(settings.smtp_host, settings.smtp_port, settings.smtp_user, settings.smtp_pass)

    def send(self, to: str, subject: str, html: str) -> None:
        if not self.host:
            log.info("Mail transport disabled, dropping mail to %s: %s", to, subject)
            return
        msg = EmailMessage()
        msg["From"] = self.user or f"noreply@{self.host}"
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            log.error("Failed to send mail to %s: %s", to, e)
            raise ServiceUnavailable("Failed to send email")
        log.info("Sent mail to %s: %s", to, subject)
