import logging
import os
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)

# captured (to, subject, body) instead of sending while TESTING=1
EMAIL_OUTBOX: list[tuple[str, str, str]] = []


def assignment_email(node_label: str, project_name: str | None = None) -> tuple[str, str]:
    where = f" on {project_name}" if project_name else ""
    subject = f"Workflow step assigned: {node_label}"
    body = (
        f'You have been assigned "{node_label}"{where}.\n'
        "It is waiting for you under My approvals."
    )
    return subject, body


def send_email(to_email: str, subject: str, message: str) -> bool:
    if os.getenv("TESTING") == "1":
        EMAIL_OUTBOX.append((to_email, subject, message))
        return True
    server = os.getenv("SMTP_SERVER")
    if not server:
        logger.info("SMTP_SERVER not set; not emailing %s", to_email)
        return False
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = os.getenv("EMAIL_FROM", "noreply@example.com")
    msg["To"] = to_email
    msg.set_content(message)
    with smtplib.SMTP(server, int(os.getenv("SMTP_PORT", "25"))) as smtp:
        if os.getenv("SMTP_STARTTLS") == "1":
            smtp.starttls()
        username = os.getenv("SMTP_USERNAME")
        if username:
            smtp.login(username, os.getenv("SMTP_PASSWORD", ""))
        smtp.send_message(msg)
    return True
