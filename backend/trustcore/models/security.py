from __future__ import annotations

from ..extensions import db
from trustcore.time_utils import to_utc_z


class SecurityEvent(db.Model):
    """
    Security event audit log.

    WHY: Track failed logins, lockouts, token misuse, CSRF mismatches,
    integrity mismatches and rate-limit trips. Critical for detecting
    brute force and fraud.

    Written by services/security_events.py (SqlSecurityEventSink), always
    outside the checkout transaction so a rolled-back checkout still leaves
    its failure event behind.

    IMMUTABLE: Never update or delete. Append-only for audit integrity.
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_user_type", "user_id", "event_type"),
        db.Index("ix_security_events_occurred", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # No FK: events for unknown usernames and deleted users must still be kept
    user_id = db.Column(db.Integer, nullable=True, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    success = db.Column(db.Boolean, nullable=False, index=True)
    resource = db.Column(db.String(128), nullable=True)
    reason = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "event_type": self.event_type,
            "success": self.success,
            "resource": self.resource,
            "reason": self.reason,
            "details": self.details,
            "ip_address": self.ip_address,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class AuditLog(db.Model):
    """
    Business audit trail for committed checkouts.

    Written inside the same DB transaction as the domain event it records
    (one row per committed checkout). Never contains payment secrets.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    event_data = db.Column(db.JSON, nullable=False, default=dict)
    severity = db.Column(db.String(16), nullable=False, default="LOW")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "event_data": self.event_data,
            "severity": self.severity,
            "created_at": to_utc_z(self.created_at),
        }


class KeyedStoreEntry(db.Model):
    """
    Backing table for SqlKeyedStore (revoked tokens, failed-attempt records,
    rate-limit counters) when several app instances share state.
    """
    __tablename__ = "keyed_store_entries"
    __table_args__ = (
        db.UniqueConstraint("namespace", "key", name="uq_keyed_store_namespace_key"),
        db.Index("ix_keyed_store_namespace_created", "namespace", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    namespace = db.Column(db.String(64), nullable=False)
    key = db.Column(db.String(255), nullable=False)
    value = db.Column(db.JSON, nullable=True)
    counter = db.Column(db.Integer, nullable=False, default=0)
    # Seconds since epoch as float: insertion order for oldest-first eviction
    created_at = db.Column(db.Float, nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
