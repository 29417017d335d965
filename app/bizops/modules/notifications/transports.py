"""
Wire-level delivery: SMTP for email, the Deywuro HTTP gateway for SMS.

These raise ``DeliveryError`` on failure; the service layer turns that into a logged
``DeliveryResult``.
"""
from __future__ import annotations

import json
import re
import smtplib
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from html import escape

DEFAULT_SMS_API_URL = "https://deywuro.com/api/sms"


class DeliveryError(RuntimeError):
    pass


@dataclass(frozen=True)
class EmailConfig:
    host: str
    port: int
    username: str
    password: str
    from_address: str
    from_name: str = ""
    encryption: str = "tls"  # tls | ssl | none
    timeout_seconds: int = 30

    @property
    def is_complete(self) -> bool:
        return bool(self.host and self.username and self.password and self.from_address)


@dataclass(frozen=True)
class SmsConfig:
    username: str
    password: str
    sender_id: str
    api_url: str = DEFAULT_SMS_API_URL

    @property
    def is_complete(self) -> bool:
        return bool(self.username and self.password)


def text_to_html(body: str) -> str:
    if "<" in body and ">" in body:
        return body
    return escape(body).replace("\n", "<br>")


def build_email(config: EmailConfig, to: str, subject: str, body: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((config.from_name, config.from_address)) if config.from_name else config.from_address
    msg["To"] = to
    msg["Subject"] = subject
    msg["Message-ID"] = make_msgid(domain=config.from_address.rpartition("@")[2] or None)
    msg.set_content(re.sub(r"<[^>]+>", "", body))
    msg.add_alternative(f"<html><body>{text_to_html(body)}</body></html>", subtype="html")
    return msg


def send_smtp(config: EmailConfig, to: str, subject: str, body: str) -> str:
    """Send one message and return its Message-ID."""
    msg = build_email(config, to, subject, body)
    try:
        if config.encryption == "ssl":
            server: smtplib.SMTP = smtplib.SMTP_SSL(config.host, config.port, timeout=config.timeout_seconds)
        else:
            server = smtplib.SMTP(config.host, config.port, timeout=config.timeout_seconds)
        with server:
            if config.encryption == "tls":
                server.starttls()
            server.login(config.username, config.password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise DeliveryError(str(e) or e.__class__.__name__) from e
    return str(msg["Message-ID"])


def phone_digits(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


@dataclass(frozen=True)
class DeywuroClient:
    config: SmsConfig
    timeout_seconds: int = 30

    def send(self, destination: str, message: str) -> str:
        """Form-POST one SMS; the gateway answers JSON with ``code == 0`` on success."""
        data = urllib.parse.urlencode(
            {
                "username": self.config.username,
                "password": self.config.password,
                "destination": destination,
                "source": self.config.sender_id,
                "message": message,
            }
        ).encode("utf-8")
        req = urllib.request.Request(self.config.api_url or DEFAULT_SMS_API_URL, data=data, method="POST")
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                status = resp.status
                raw = resp.read()
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="ignore")
            raise DeliveryError(f"HTTP {e.code} from SMS gateway: {body[:300]}") from e
        except (urllib.error.URLError, OSError) as e:
            raise DeliveryError(f"SMS gateway unreachable: {e}") from e

        try:
            result = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise DeliveryError(f"SMS provider returned non-JSON response: {status}") from e
        if not isinstance(result, dict) or result.get("code") != 0:
            message_text = result.get("message") if isinstance(result, dict) else None
            raise DeliveryError(f"SMS failed: {message_text or 'Unknown error'}")
        return str(result.get("id") or f"deywuro_{uuid.uuid4().hex[:12]}")
