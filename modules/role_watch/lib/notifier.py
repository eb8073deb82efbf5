from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from service import emailer

from . import render
from .errors import ConfigError, NotificationDispatchError
from .models import Role


@dataclass
class Notifier:
    """
    Sends the role list as one HTML email through service.emailer.

    Recipients come from the job config (email_to / cc / bcc); the subject
    template may reference {count}.
    """

    recipients: list[str]
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    subject_template: str | None = None

    def check_ready(self) -> None:
        """Fail fast (before any fetch) if a send could not possibly succeed."""
        if not (self.recipients or self.cc or self.bcc):
            raise ConfigError("No notification recipients configured (email_to / ROLE_WATCH_TO).")
        try:
            emailer.validate_settings()
        except emailer.EmailConfigError as e:
            raise ConfigError(str(e)) from e

    def send(self, roles: Sequence[Role]) -> str:
        """
        Render and dispatch. Returns the transport's message id.

        Raises:
            NotificationDispatchError if the email could not be delivered.
        """
        subject, html = render.build_email(roles, subject_template=self.subject_template)
        try:
            return emailer.send_html(subject=subject, html=html, to=self.recipients, cc=self.cc, bcc=self.bcc)
        except emailer.EmailSendError as e:
            raise NotificationDispatchError(f"Failed to send notification: {e}") from e
