# service/emailer.py
from __future__ import annotations

import os
import smtplib
import ssl
import time
import uuid
from collections.abc import Iterable
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

import requests

RESEND_API_URL = "https://api.resend.com/emails"

# Relay busy / mailbox temporarily unavailable; worth another attempt.
_SMTP_TRANSIENT_CODES = frozenset({421, 450, 451, 452})

# ---- Errors -----------------------------------------------------------------


class EmailSendError(RuntimeError):
    """Raised when an email cannot be delivered."""


class EmailConfigError(EmailSendError):
    """Raised when the transport is not configured well enough to try."""


class _TransientSendError(EmailSendError):
    """Relay or API answered with a retryable status."""


# ---- Env / Settings ----------------------------------------------------------


def _getenv_any(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v != "":
            return v
    return default


def _resolve_settings() -> dict:
    """
    Resolve mail transport settings from env.

    EMAIL_TRANSPORT = "smtp" (default) | "resend"

    SMTP:
      - SMTP_HOST / SMTP_PORT
      - SMTP_USERNAME / SMTP_PASSWORD
      - SMTP_USE_SSL = "true" | "false"
      - SMTP_STARTTLS = "true" | "false" | "auto" (default)
      - SMTP_INSECURE_TLS = "true" | "false"

    Resend:
      - RESEND_API_KEY
      - RESEND_API_URL (optional override)

    Sender (both):
      - SMTP_FROM or FROM_EMAIL, optional SMTP_FROM_NAME
    """
    transport = (_getenv_any("EMAIL_TRANSPORT", default="smtp") or "smtp").strip().lower()

    host = _getenv_any("SMTP_HOST", default="127.0.0.1")
    port = int(_getenv_any("SMTP_PORT", default="587") or 587)
    username = _getenv_any("SMTP_USERNAME")
    password = _getenv_any("SMTP_PASSWORD")

    # Mutually exclusive knobs: prefer explicit USE_SSL when provided
    use_ssl = (_getenv_any("SMTP_USE_SSL", default="false") or "false").strip().lower() == "true"
    starttls = (_getenv_any("SMTP_STARTTLS", default="auto") or "auto").strip().lower()
    if use_ssl:
        starttls = "false"

    default_from_addr = _getenv_any("SMTP_FROM", "FROM_EMAIL", default=username or "")
    default_from_name = _getenv_any("SMTP_FROM_NAME", default="")

    insecure_tls = (_getenv_any("SMTP_INSECURE_TLS", default="false") or "false").strip().lower() == "true"

    return {
        "transport": transport,
        "host": host,
        "port": port,
        "username": username,
        "password": password,
        "use_ssl": use_ssl,
        "starttls": starttls,  # "true" | "false" | "auto"
        "default_from_addr": default_from_addr,
        "default_from_name": default_from_name,
        "insecure_tls": insecure_tls,
        "resend_api_key": _getenv_any("RESEND_API_KEY"),
        "resend_api_url": _getenv_any("RESEND_API_URL", default=RESEND_API_URL),
    }


def validate_settings() -> None:
    """
    Check that the configured transport has what it needs to send.
    Raises EmailConfigError naming the first missing setting.
    """
    settings = _resolve_settings()
    transport = settings["transport"]
    if transport not in {"smtp", "resend"}:
        raise EmailConfigError(f"EMAIL_TRANSPORT must be 'smtp' or 'resend' (got {transport!r}).")
    if not (settings["default_from_addr"] or "").strip():
        raise EmailConfigError("No from address resolved. Set SMTP_FROM or FROM_EMAIL.")
    if transport == "resend":
        if not settings["resend_api_key"]:
            raise EmailConfigError("RESEND_API_KEY environment variable is not set.")
        return
    if not (settings["host"] and settings["username"] and settings["password"]):
        raise EmailConfigError("Missing SMTP credentials or host. Expected SMTP_HOST, SMTP_USERNAME, SMTP_PASSWORD.")


# ---- Helpers ----------------------------------------------------------------


def _as_list(values: Iterable[str] | str | None) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = values.split(",")
    return [v for v in (s.strip() for s in values) if v]


def _should_starttls(port: int, starttls_setting: str) -> bool:
    if starttls_setting == "true":
        return True
    if starttls_setting == "false":
        return False
    # "auto": enable STARTTLS except on the usual cleartext relay ports
    return port not in (25, 2525)


def _from_header(from_name: str | None, from_addr: str) -> str:
    return f"{from_name} <{from_addr}>" if from_name else from_addr


def _build_message(
    *,
    subject: str,
    html: str,
    to: list[str],
    cc: list[str],
    from_name: str | None,
    from_addr: str,
    headers: dict[str, str] | None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = _from_header(from_name, from_addr)

    # Recipients (note: bcc is not added to headers)
    if to:
        msg["To"] = ", ".join(to)
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Reply-To"] = from_addr
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    msg["X-Mailer-Nonce"] = uuid.uuid4().hex

    if headers:
        for k, v in headers.items():
            if k.lower() in {"from", "to", "cc", "bcc", "subject", "date", "message-id"}:
                continue
            msg[k] = v

    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    html_augmented = html.rstrip() + f"\n<!-- mailer-ts:{stamp} -->"

    msg.set_content("This message requires an HTML-capable client.")
    msg.add_alternative(html_augmented, subtype="html", charset="utf-8")
    return msg


def _send_via_smtp(msg: EmailMessage, *, rcpt_to: list[str], settings: dict) -> str:
    host = settings["host"]
    port = settings["port"]
    use_ssl = settings["use_ssl"]

    context = ssl._create_unverified_context() if settings["insecure_tls"] else ssl.create_default_context()

    try:
        server = smtplib.SMTP_SSL(host, port, context=context) if use_ssl else smtplib.SMTP(host, port)
        with server:
            server.ehlo()
            if not use_ssl and _should_starttls(port, settings["starttls"]):
                server.starttls(context=context)
                server.ehlo()
            server.login(settings["username"], settings["password"])
            # include BCC by explicit rcpt_to
            server.send_message(msg, to_addrs=rcpt_to)
    except smtplib.SMTPResponseException as e:
        if e.smtp_code in _SMTP_TRANSIENT_CODES:
            raise _TransientSendError(f"SMTP send failed: {e.smtp_code} {e.smtp_error!r}") from e
        raise EmailSendError(f"SMTP send failed: {e}") from e
    except Exception as e:
        raise EmailSendError(f"SMTP send failed: {e}") from e
    return str(msg["Message-ID"])


def _send_via_resend(
    *,
    subject: str,
    html: str,
    to: list[str],
    cc: list[str],
    bcc: list[str],
    settings: dict,
) -> str:
    payload: dict[str, object] = {
        "from": _from_header(settings["default_from_name"].strip(), settings["default_from_addr"].strip()),
        "to": to,
        "subject": subject,
        "html": html,
    }
    if cc:
        payload["cc"] = cc
    if bcc:
        payload["bcc"] = bcc

    try:
        resp = requests.post(
            settings["resend_api_url"],
            headers={"Authorization": f"Bearer {settings['resend_api_key']}"},
            json=payload,
            timeout=30,
        )
    except requests.RequestException as e:
        raise EmailSendError(f"Resend request failed: {e}") from e

    if resp.status_code >= 500:
        raise _TransientSendError(f"Resend API error: {resp.status_code} {resp.reason} - {resp.text[:200]}")
    if not resp.ok:
        raise EmailSendError(f"Resend API error: {resp.status_code} {resp.reason} - {resp.text[:200]}")
    try:
        return str(resp.json().get("id") or "")
    except ValueError:
        return ""


# ---- Public API --------------------------------------------------------------


def send_html(
    *,
    subject: str,
    html: str,
    to: list[str],
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    headers: dict[str, str] | None = None,
) -> str:
    """
    Send an HTML email through the configured transport.

    Returns:
        message_id (str): RFC-822 Message-ID (SMTP) or the provider's id (Resend).

    Raises:
        EmailSendError on any failure (config/connection/auth/validation/etc).
    """
    if not subject or not subject.strip():
        raise EmailSendError("Missing subject.")
    if not html or not html.strip():
        raise EmailSendError("Missing HTML body.")

    to_l = _as_list(to)
    cc_l = _as_list(cc)
    bcc_l = _as_list(bcc)
    rcpt_to = [*to_l, *cc_l, *bcc_l]
    if not rcpt_to:
        raise EmailSendError("No recipients (to/cc/bcc).")

    validate_settings()
    settings = _resolve_settings()

    def _attempt() -> str:
        if settings["transport"] == "resend":
            return _send_via_resend(subject=subject, html=html, to=to_l, cc=cc_l, bcc=bcc_l, settings=settings)
        msg = _build_message(
            subject=subject,
            html=html,
            to=to_l,
            cc=cc_l,
            from_name=settings["default_from_name"].strip(),
            from_addr=settings["default_from_addr"].strip(),
            headers=headers,
        )
        return _send_via_smtp(msg, rcpt_to=rcpt_to, settings=settings)

    last: EmailSendError | None = None
    for attempt in range(4):
        try:
            return _attempt()
        except _TransientSendError as e:  # noqa: PERF203
            last = e
            if attempt < 3:
                time.sleep(2**attempt)  # 1s, 2s, 4s
    raise EmailSendError(f"Permanent send failure after retries: {last}")
