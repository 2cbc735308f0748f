"""
Email notification utilities for LDAP Group Sync.

This module sends email notifications for failed runs, LDAP connection
problems and, optionally, a summary of every successful run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, List, Optional
from datetime import datetime

from ldap_group_sync.models import RunSummary

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "LDAP Group Sync"
FOOTER = "This is an automated message from LDAP Group Sync."


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    return [email_to] if isinstance(email_to, str) else list(email_to)


def _open_smtp(config: Dict[str, Any]) -> smtplib.SMTP:
    host = config['smtp_server']
    port = config.get('smtp_port', 587)
    if port == 465:
        return smtplib.SMTP_SSL(host, port)
    server = smtplib.SMTP(host, port)
    if config.get('smtp_tls', True):
        server.starttls()
    return server


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain-text mail to the configured recipients.

    Port 465 uses implicit TLS, any other port STARTTLS unless ``smtp_tls`` is
    false. Delivery problems are logged and reported through the return value.

    Returns:
        True if the mail was handed to the SMTP server
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    recipients = _recipients(config)
    if not config.get('smtp_server'):
        logger.error("SMTP server not configured")
        return False
    if not recipients:
        logger.error("No email recipients configured")
        return False

    username = config.get('smtp_username')
    password = config.get('smtp_password')
    sender = config.get('email_from', username)

    msg = MIMEMultipart()
    msg['From'] = sender
    msg['To'] = ', '.join(recipients)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        server = _open_smtp(config)
        try:
            if username and password:
                server.login(username, password)
            server.sendmail(sender, recipients, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def format_runtime(seconds: float) -> str:
    """Render a duration the way run summaries display it."""
    if seconds > 60:
        return f"{int(seconds // 60)}m {seconds % 60:.1f}s"
    return f"{seconds:.2f} seconds"


def _summary_lines(summary: RunSummary):
    return [
        f"  Mode: {'destructive' if summary.destructive else 'non-destructive'}",
        f"  Runtime: {format_runtime(summary.duration_seconds)}",
        f"  Records processed: {summary.processed_count}",
        f"  Groups created: {summary.created_count}",
        f"  Groups updated: {summary.updated_count}",
        f"  Groups deleted: {summary.deleted_count}",
        f"  Records skipped: {summary.skipped_count}",
    ]


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    summary: Optional[RunSummary] = None,
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        summary: Partial run summary, if the engine got far enough to produce one
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body_lines = [
        "LDAP Group Sync Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    if summary is not None:
        body_lines.append("Progress before the failure:")
        body_lines.extend(_summary_lines(summary))
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        FOOTER,
    ])

    return send_email(f"{SUBJECT_PREFIX} Alert: {title}", '\n'.join(body_lines), config)


def send_success_summary(summary: RunSummary, config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a successful run.

    Args:
        summary: Summary returned by the reconciliation engine
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = [
        "LDAP Group Sync Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "Sync completed successfully!",
        "",
        "Statistics:",
    ]
    body_lines.extend(_summary_lines(summary))
    body_lines.extend(["", FOOTER])

    return send_email(f"{SUBJECT_PREFIX}: Successful Completion", '\n'.join(body_lines), config)


def send_ldap_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """
    Send notification for LDAP connection failures.

    Args:
        error_message: LDAP error description
        config: Notification configuration
        retry_count: Number of retries attempted

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Component': 'LDAP Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync aborted - no groups reconciled'
    }

    return send_failure_notification(
        "LDAP Connection Failed",
        error_message,
        config,
        additional_info=additional_info
    )


def send_test_notification(config: Dict[str, Any]) -> bool:
    """Send a configuration test mail; used by ``--test-email``."""
    test_body = "\n".join([
        "This is a test email from LDAP Group Sync.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        "Test details:",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(_recipients(config))}",
    ])

    result = send_email(f"{SUBJECT_PREFIX}: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
