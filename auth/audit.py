"""
auth/audit.py -- Persistent audit trail for security-relevant events.

Every event is written to the audit_logs table and echoed to the
"tokenward.audit" logger. High-severity events (token reuse) are logged at
WARNING so they reach operators even when nobody reads the table.

Audit is a side channel: a failure to record an event is logged and
swallowed. It must never turn a successful login into a 500, and it must
never mask the exception the caller is about to raise (TokenReuseDetected).

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEvent, DeviceInfo
from auth.store import make_engine

logger = logging.getLogger("tokenward.audit")

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("action", String(64), nullable=False),
    Column("resource_type", String(64)),
    Column("resource_id", String(64)),
    Column("old_values", Text),  # JSON
    Column("new_values", Text),  # JSON
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("device_type", String(32)),
    Column("severity", String(16), nullable=False, server_default="info"),
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_logs_user", "user_id", "created_at"),
)


class AuditLog:
    """Audit sink.

    Usage:
        audit = AuditLog("sqlite:///tokenward.db")
        audit.user_login(user_id, "magic_link", device)
        audit.for_user(user_id)
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def record(self, event: AuditEvent) -> None:
        """Persist one event. Never raises."""
        created_at = event.created_at or datetime.now(timezone.utc).isoformat(timespec="microseconds")
        level = logging.WARNING if event.severity == "high" else logging.INFO
        logger.log(level, "audit action=%s user_id=%s severity=%s", event.action, event.user_id, event.severity)
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        user_id=event.user_id,
                        action=event.action,
                        resource_type=event.resource_type,
                        resource_id=event.resource_id,
                        old_values=json.dumps(event.old_values) if event.old_values is not None else None,
                        new_values=json.dumps(event.new_values) if event.new_values is not None else None,
                        ip_address=event.ip_address,
                        user_agent=event.user_agent,
                        device_type=event.device_type,
                        severity=event.severity,
                        created_at=created_at,
                    )
                )
                conn.commit()
        except SQLAlchemyError:
            logger.exception("Failed to record audit event %s", event.action)

    def for_user(self, user_id: int, limit: int = 100) -> list[AuditEvent]:
        """Most recent events for user_id, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select()
                .where(_audit_logs.c.user_id == user_id)
                .order_by(_audit_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Named events
    # ------------------------------------------------------------------

    def user_signup(self, user_id: int, method: str, device: DeviceInfo | None = None) -> None:
        self.record(_event("user_signup", user_id, device, resource_type="user", new_values={"method": method}))

    def user_login(self, user_id: int, method: str, device: DeviceInfo | None = None) -> None:
        self.record(_event("user_login", user_id, device, resource_type="user", new_values={"method": method}))

    def failed_login(self, reason: str, device: DeviceInfo | None = None, email: str | None = None) -> None:
        values = {"reason": reason}
        if email:
            values["email"] = email
        self.record(_event("failed_login", None, device, new_values=values))

    def user_logout(self, user_id: int, device: DeviceInfo | None = None, all_sessions: bool = False) -> None:
        self.record(_event("user_logout", user_id, device, new_values={"all_sessions": all_sessions}))

    def token_refreshed(self, user_id: int, old_token_id: str, new_token_id: str, device: DeviceInfo | None = None) -> None:
        self.record(
            _event(
                "token_refreshed",
                user_id,
                device,
                resource_type="refresh_token",
                resource_id=new_token_id,
                old_values={"token_id": old_token_id},
                new_values={"token_id": new_token_id},
            )
        )

    def token_reuse_detected(self, user_id: int, token_id: str, revoked: int, device: DeviceInfo | None = None) -> None:
        self.record(
            _event(
                "token_reuse_detected",
                user_id,
                device,
                resource_type="refresh_token",
                resource_id=token_id,
                new_values={"revoked_sessions": revoked},
                severity="high",
            )
        )

    def passwordless_requested(self, user_id: int | None, method: str, device: DeviceInfo | None = None) -> None:
        self.record(_event("passwordless_requested", user_id, device, new_values={"method": method}))

    def email_verified(self, user_id: int, device: DeviceInfo | None = None) -> None:
        self.record(_event("email_verified", user_id, device, resource_type="user"))


def _event(action: str, user_id: int | None, device: DeviceInfo | None, **kwargs) -> AuditEvent:
    device = device or DeviceInfo()
    return AuditEvent(
        action=action,
        user_id=user_id,
        ip_address=device.ip,
        user_agent=device.user_agent,
        device_type=device.device_type,
        **kwargs,
    )


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        action=row.action,
        user_id=row.user_id,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        old_values=json.loads(row.old_values) if row.old_values else None,
        new_values=json.loads(row.new_values) if row.new_values else None,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_type=row.device_type,
        severity=row.severity,
        created_at=row.created_at,
    )
