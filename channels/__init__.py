"""Downstream collaborators: technician notifiers and the ticket archiver."""
from channels.base import (
    Archiver,
    NotificationResult,
    Notifier,
    render_html,
    render_subject,
)
from channels.email_notifier import LogNotifier, MailgunNotifier, create_notifier
from channels.archiver import SqlArchiver

__all__ = [
    "Archiver", "Notifier", "NotificationResult",
    "render_html", "render_subject",
    "LogNotifier", "MailgunNotifier", "create_notifier",
    "SqlArchiver",
]
