"""Security alert persistence and administrator notification.

Alerts are stored per user in Cassandra (newest first by TIMEUUID) and,
for high and critical severities, published on Redis so connected admin
consoles see them immediately. Every alert also leaves an audit log line.
"""

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid1

import orjson
import structlog

from src.core.redis import security_alert_channel, user_security_alert_channel

from .cache import VideoCache
from .exceptions import AlertNotFoundError
from .models import AlertSeverity, AlertStatus, AlertType, SecurityAlert


if TYPE_CHECKING:
    import redis.asyncio as redis
    from cassandra.cluster import Session

logger = structlog.get_logger(__name__)

NOTIFY_SEVERITIES = frozenset({AlertSeverity.HIGH, AlertSeverity.CRITICAL})


def _dump(data: dict[str, Any]) -> str:
    return orjson.dumps(data, default=str).decode()


class AlertService:
    """Create, review and notify on security alerts."""

    def __init__(
        self,
        session: "Session",
        keyspace: str,
        redis: "redis.Redis | None" = None,
        cache: VideoCache | None = None,
    ):
        """Initialize with Cassandra session and optional Redis for pub/sub."""
        self.session = session
        self.keyspace = keyspace
        self.redis = redis
        self.cache = cache
        self._prepare_statements()

    def _prepare_statements(self) -> None:
        """Prepare CQL statements for efficient execution."""
        self._insert_alert = self.session.prepare(f"""
            INSERT INTO {self.keyspace}.video_security_alerts
            (user_id, id, video_lesson_id, alert_type, severity, description,
             evidence, status, created_at, reviewed_at, reviewed_by, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """)

        self._get_alert = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_security_alerts
            WHERE user_id = ? AND id = ?
        """)

        self._get_user_alerts = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_security_alerts
            WHERE user_id = ? LIMIT ?
        """)

        self._get_alerts_by_status = self.session.prepare(f"""
            SELECT * FROM {self.keyspace}.video_security_alerts
            WHERE status = ?
        """)

        self._update_status = self.session.prepare(f"""
            UPDATE {self.keyspace}.video_security_alerts
            SET status = ?, reviewed_at = ?, reviewed_by = ?, notes = ?
            WHERE user_id = ? AND id = ?
        """)

    # ==========================================================================
    # Creation and notification
    # ==========================================================================

    async def create_alert(
        self,
        user_id: UUID,
        alert_type: AlertType,
        severity: AlertSeverity,
        description: str,
        evidence: dict[str, Any] | None = None,
        video_lesson_id: UUID | None = None,
    ) -> SecurityAlert:
        """Persist a new active alert.

        Args:
            user_id: Flagged user
            alert_type: Alert category
            severity: Alert severity
            description: Human readable reason
            evidence: JSON-serializable supporting data
            video_lesson_id: Related video lesson

        Returns:
            Created SecurityAlert
        """
        alert = SecurityAlert(
            id=uuid1(),
            user_id=user_id,
            video_lesson_id=video_lesson_id,
            alert_type=alert_type,
            severity=severity,
            description=description,
            evidence=evidence,
        )

        await self.session.aexecute(
            self._insert_alert,
            [
                alert.user_id,
                alert.id,
                alert.video_lesson_id,
                alert.alert_type.value,
                alert.severity.value,
                alert.description,
                _dump(alert.evidence),
                alert.status.value,
                alert.created_at,
                None,
                None,
                None,
            ],
        )

        if self.cache is not None:
            self.cache.invalidate_user_cache(user_id)

        logger.info(
            "security_alert_created",
            alert_id=str(alert.id),
            user_id=str(user_id),
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
        )
        return alert

    async def send_alert_notifications(self, alert: SecurityAlert) -> bool:
        """Audit-log every alert and publish high/critical ones to admins.

        Returns:
            True if the alert was published
        """
        logger.warning(
            "security_alert_audit",
            alert_id=str(alert.id),
            user_id=str(alert.user_id),
            video_lesson_id=str(alert.video_lesson_id) if alert.video_lesson_id else None,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            description=alert.description,
        )

        if alert.severity not in NOTIFY_SEVERITIES or self.redis is None:
            return False

        message = _dump({"type": "security_alert", "data": alert.to_dict()})
        await self.redis.publish(security_alert_channel(), message)
        await self.redis.publish(user_security_alert_channel(str(alert.user_id)), message)
        logger.info(
            "security_alert_published",
            alert_id=str(alert.id),
            severity=alert.severity.value,
        )
        return True

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get_user_alerts(
        self, user_id: UUID, active_only: bool = False, limit: int = 50
    ) -> list[SecurityAlert]:
        """Alerts for a user, newest first."""
        cached = None if self.cache is None else self.cache.get_security_alerts(user_id)
        if cached is None:
            result = await self.session.aexecute(self._get_user_alerts, [user_id, limit])
            cached = [SecurityAlert.from_row(row) for row in result]
            if self.cache is not None:
                self.cache.cache_security_alerts(user_id, cached)

        if active_only:
            return [alert for alert in cached if alert.is_active]
        return list(cached)

    async def count_active_alerts(self, user_id: UUID) -> int:
        return len(await self.get_user_alerts(user_id, active_only=True))

    async def update_alert_status(
        self,
        user_id: UUID,
        alert_id: UUID,
        status: AlertStatus,
        reviewed_by: UUID | None = None,
        notes: str | None = None,
    ) -> SecurityAlert:
        """Record an administrator review.

        Raises:
            AlertNotFoundError: If the alert does not exist
        """
        result = await self.session.aexecute(self._get_alert, [user_id, alert_id])
        row = result.one()
        if not row:
            raise AlertNotFoundError

        alert = SecurityAlert.from_row(row)
        alert.status = status
        alert.reviewed_at = datetime.now(UTC)
        alert.reviewed_by = reviewed_by
        alert.notes = notes

        await self.session.aexecute(
            self._update_status,
            [status.value, alert.reviewed_at, reviewed_by, notes, user_id, alert_id],
        )
        if self.cache is not None:
            self.cache.invalidate_user_cache(user_id)

        logger.info(
            "security_alert_reviewed",
            alert_id=str(alert_id),
            status=status.value,
            reviewed_by=str(reviewed_by) if reviewed_by else None,
        )
        return alert

    async def auto_resolve_old_alerts(self, days: int = 30) -> int:
        """Resolve active low-severity alerts older than ``days``.

        Returns:
            Number of resolved alerts
        """
        cutoff = datetime.now(UTC) - timedelta(days=days)
        result = await self.session.aexecute(
            self._get_alerts_by_status, [AlertStatus.ACTIVE.value]
        )

        resolved = 0
        now = datetime.now(UTC)
        for row in result:
            alert = SecurityAlert.from_row(row)
            if alert.severity != AlertSeverity.LOW or alert.created_at >= cutoff:
                continue
            await self.session.aexecute(
                self._update_status,
                [
                    AlertStatus.RESOLVED.value,
                    now,
                    None,
                    f"Auto-resolved after {days} days",
                    alert.user_id,
                    alert.id,
                ],
            )
            if self.cache is not None:
                self.cache.invalidate_user_cache(alert.user_id)
            resolved += 1

        logger.info("security_alerts_auto_resolved", count=resolved, days=days)
        return resolved
