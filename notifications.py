"""Outbound email for borrow/return events.

Notifications are best effort: they run as FastAPI background tasks after the
response is sent, and any failure is logged and dropped so that a mail
outage never undoes a borrow or return.
"""

import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from typing import Optional

import config

logger = logging.getLogger(__name__)


def is_configured() -> bool:
    """Return True if an SMTP host is configured."""
    return bool(config.SMTP_HOST)


def _fmt_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def book_borrowed_body(name: str, book_title: str, borrowed_at: datetime, due_at: datetime) -> str:
    return (
        f"Hello {name},\n\n"
        f"You have borrowed \"{book_title}\".\n"
        f"Borrowed on: {_fmt_date(borrowed_at)}\n"
        f"Due date: {_fmt_date(due_at)}\n\n"
        "Please return the book by the due date to avoid late fees.\n\n"
        "Thank you,\nLibrary Management System Team\n"
    )


def book_returned_body(name: str, book_title: str, returned_at: datetime, fine_amount: float) -> str:
    lines = [
        f"Hello {name},\n",
        f"You have returned \"{book_title}\" on {_fmt_date(returned_at)}.",
    ]
    if fine_amount > 0:
        lines.append(
            f"A late fee of ${fine_amount:.2f} has been charged. "
            "You can pay it from your account dashboard."
        )
    else:
        lines.append("Thank you for returning the book on time!")
    lines.append("\nThank you,\nLibrary Management System Team\n")
    return "\n".join(lines)


def send_email(to: str, subject: str, body: str) -> bool:
    """Send a plain-text email. Returns False instead of raising on failure."""
    if not is_configured():
        logger.debug("SMTP not configured; skipping email to %s (%s)", to, subject)
        return False

    msg = EmailMessage()
    msg["From"] = config.SMTP_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        if config.SMTP_PORT == 465:
            server = smtplib.SMTP_SSL(config.SMTP_HOST, config.SMTP_PORT, timeout=30)
        else:
            server = smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=30)
            server.starttls()
        with server:
            if config.SMTP_USER:
                server.login(config.SMTP_USER, config.SMTP_PASSWORD or "")
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Email notification to %s failed: %s", to, e)
        return False
    return True


def notify_book_borrowed(email: Optional[str], name: str, book_title: str, borrowed_at: datetime, due_at: datetime) -> None:
    if not email:
        return
    send_email(email, "Book Borrowed Successfully", book_borrowed_body(name, book_title, borrowed_at, due_at))


def notify_book_returned(email: Optional[str], name: str, book_title: str, returned_at: datetime, fine_amount: float) -> None:
    if not email:
        return
    send_email(email, "Book Returned Successfully", book_returned_body(name, book_title, returned_at, fine_amount))
