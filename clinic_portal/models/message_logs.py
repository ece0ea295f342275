"""Message log model for the failed-delivery ledger."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

metadata = MetaData()

message_logs = Table(
    "message_logs",
    metadata,
    Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
    Column("phone_number", String(20), nullable=False),
    Column("message", Text, nullable=False),
    Column("template_name", String(100), nullable=True),
    Column("appointment_id", UUID(as_uuid=True), nullable=True),
    Column("patient_id", UUID(as_uuid=True), nullable=True),
    Column("error", Text, nullable=True),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False, server_default="failed"),
    Column("created_at", TIMESTAMP(timezone=True), nullable=False, server_default=text("NOW()")),
    Column("last_retry_at", TIMESTAMP(timezone=True), nullable=True),
    Column("delivered_at", TIMESTAMP(timezone=True), nullable=True),
    CheckConstraint("retry_count >= 0", name="message_logs_retry_count_check"),
    CheckConstraint(
        "status IN ('failed', 'delivered')",
        name="message_logs_status_check",
    ),
    Index("idx_message_logs_status", "status"),
    Index("idx_message_logs_created_at", "created_at", postgresql_ops={"created_at": "DESC"}),
    Index("idx_message_logs_appointment", "appointment_id"),
)
