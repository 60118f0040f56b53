from __future__ import annotations

import re
import smtplib
import socket
from email.message import EmailMessage
from email.utils import formataddr
from typing import Dict, List, Optional, Tuple

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

TEST_SUBJECT = "Guardian SMTP Test - Connection Successful"
TEST_BODY = (
    "This is a test email from Guardian to verify SMTP configuration. "
    "If you received this email, your SMTP settings are working correctly."
)


def parse_recipients(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).replace(";", ",").split(",")
    return [i.strip() for i in items if i and i.strip()]


def _port(smtp_settings: Dict) -> int:
    try:
        return int(smtp_settings.get("smtp_port") or 587)
    except (TypeError, ValueError):
        return 587


def validate_smtp_settings(smtp_settings: Dict) -> Optional[str]:
    """Return a readable problem with the SMTP settings, or None."""
    host = (smtp_settings.get("smtp_host") or "").strip()
    sender = (smtp_settings.get("mail_from") or smtp_settings.get("smtp_user") or "").strip()
    if not host or not sender:
        return "Missing required SMTP configuration (host, port or from email)"

    if smtp_settings.get("smtp_tls") and _port(smtp_settings) not in (465, 587):
        return "TLS is not supported on this port. Please use port 465 or 587."

    recipients = parse_recipients(smtp_settings.get("mail_to"))
    if not recipients:
        return "No recipient email addresses configured. Please provide at least one recipient."

    invalid = [r for r in recipients if not EMAIL_RE.match(r)]
    if invalid:
        return f"Invalid email format(s): {', '.join(invalid)}"
    return None


def describe_smtp_error(e: Exception) -> str:
    if isinstance(e, smtplib.SMTPAuthenticationError):
        return "Authentication failed. Please check your username and password."
    if isinstance(e, smtplib.SMTPRecipientsRefused):
        return "Email rejected by server. Please check recipient addresses."
    if isinstance(e, socket.gaierror):
        return "SMTP server not found. Please check the hostname."
    if isinstance(e, (socket.timeout, TimeoutError)):
        return "Connection timed out. Please check your email settings."
    if isinstance(e, (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected, ConnectionError)):
        return "Failed to connect to SMTP server. Please check the host and port."
    return f"SMTP error: {e}"


def _deliver(msg: EmailMessage, smtp_settings: Dict) -> None:
    host = (smtp_settings.get("smtp_host") or "").strip()
    port = _port(smtp_settings)
    user = (smtp_settings.get("smtp_user") or "").strip()
    password = smtp_settings.get("smtp_pass") or ""

    # 465 is implicit TLS, other ports upgrade with STARTTLS
    if port == 465:
        server = smtplib.SMTP_SSL(host, port, timeout=30)
    else:
        server = smtplib.SMTP(host, port, timeout=30)

    with server:
        if port != 465 and smtp_settings.get("smtp_tls"):
            server.starttls()
        if user:
            server.login(user, password)
        server.send_message(msg)


def _build_message(subject: str, body: str, to_list: List[str], smtp_settings: Dict) -> EmailMessage:
    mail_from = (smtp_settings.get("mail_from") or smtp_settings.get("smtp_user") or "").strip()
    from_name = (smtp_settings.get("mail_from_name") or "").strip()

    msg = EmailMessage()
    msg["From"] = formataddr((from_name, mail_from)) if from_name else mail_from
    msg["To"] = ", ".join(to_list)
    msg["Subject"] = subject
    msg.set_content(body, subtype="plain", charset="utf-8")
    return msg


def send_email(subject: str, body: str, recipients, smtp_settings: Dict) -> Tuple[bool, str | None]:
    """Send a plain text e-mail with the SMTP settings.

    Returns (success, error_message).
    """
    to_list = parse_recipients(recipients)
    if not to_list:
        return False, "No recipient configured"
    if not (smtp_settings.get("smtp_host") or "").strip():
        return False, "SMTP host not configured"

    try:
        _deliver(_build_message(subject, body, to_list, smtp_settings), smtp_settings)
        return True, None
    except (smtplib.SMTPException, OSError) as e:
        return False, describe_smtp_error(e)


def send_test_email(smtp_settings: Dict) -> Dict:
    """Validate the settings, then send a test message to every recipient."""
    problem = validate_smtp_settings(smtp_settings)
    if problem:
        return {"success": False, "message": problem}

    to_list = parse_recipients(smtp_settings.get("mail_to"))
    try:
        _deliver(_build_message(TEST_SUBJECT, TEST_BODY, to_list, smtp_settings), smtp_settings)
    except (smtplib.SMTPException, OSError) as e:
        return {"success": False, "message": describe_smtp_error(e)}

    if len(to_list) == 1:
        target = to_list[0]
    else:
        target = f"{len(to_list)} recipients ({', '.join(to_list)})"
    return {"success": True, "message": f"SMTP connection successful! Test email sent to {target}"}
