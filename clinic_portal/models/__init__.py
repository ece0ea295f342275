"""Database models."""

from clinic_portal.models.message_logs import message_logs

__all__ = [
    "message_logs",
]
