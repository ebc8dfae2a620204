"""
Email notification utilities for LDAP Group Ops.

Sends an alert when a job finishes with an ERROR verdict or, if enabled,
a WARNING verdict. A notification that cannot be sent is logged and never
changes the job result.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_FAILURES = 10


class NotificationError(Exception):
    """Exception raised when notification sending fails."""
    pass


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    try:
        _deliver(subject, body, config)
    except NotificationError as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def _deliver(subject: str, body: str, config: Dict[str, Any]) -> None:
    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    if not smtp_server:
        raise NotificationError("SMTP server not configured")
    if not email_to:
        raise NotificationError("No email recipients configured")

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        raise NotificationError(str(e)) from e


def _job_body(heading: str, operation: str, description: str,
              dry_run: Optional[bool], failures: List[str]) -> str:
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    body_lines = [
        heading,
        f"Timestamp: {timestamp}",
        "",
        f"Operation: {operation}",
    ]
    if dry_run is not None:
        body_lines.append(f"Dry run: {'yes' if dry_run else 'no'}")
    body_lines.extend([
        f"Result: {description}",
        "",
    ])

    if failures:
        body_lines.append("Failed items:")
        for i, failure in enumerate(failures[:MAX_LISTED_FAILURES], 1):
            body_lines.append(f"  {i}. {failure}")
        if len(failures) > MAX_LISTED_FAILURES:
            body_lines.append(f"  ... and {len(failures) - MAX_LISTED_FAILURES} more")
        body_lines.append("")

    body_lines.extend([
        "Please check the application and audit logs for more detailed information.",
        "",
        "This is an automated message from LDAP Group Ops.",
    ])
    return '\n'.join(body_lines)


def send_job_failure_notification(
    operation: str,
    description: str,
    config: Dict[str, Any],
    failures: Optional[List[str]] = None,
    dry_run: Optional[bool] = None
) -> bool:
    """
    Send notification for a job that ended with an ERROR verdict.

    Args:
        operation: Operation name
        description: One-line job description
        config: Notification configuration
        failures: Failed row descriptions, if any rows were produced
        dry_run: Whether the job ran as a preview, if known

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    subject = f"LDAP Group Ops Alert: {operation} failed"
    body = _job_body("LDAP Group Ops Failure Report", operation, description, dry_run, failures or [])
    return send_email(subject, body, config)


def send_job_warning_notification(
    operation: str,
    description: str,
    failures: List[str],
    config: Dict[str, Any],
    dry_run: Optional[bool] = None
) -> bool:
    """
    Send notification for a job that completed with some failed items.

    Args:
        operation: Operation name
        description: One-line job description
        failures: Failed row descriptions
        config: Notification configuration
        dry_run: Whether the job ran as a preview

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_warning', False):
        logger.debug("Warning email notifications disabled")
        return False

    subject = f"LDAP Group Ops Warning: {operation} completed with errors"
    body = _job_body("LDAP Group Ops Warning Report", operation, description, dry_run, failures)
    return send_email(subject, body, config)
