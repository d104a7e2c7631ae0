"""Security monitoring: audit events, login lockout, rate limiting."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from core.cache import CacheService, RATE_LIMIT_PREFIX
from core.config import Settings
from core.database import Database
from core.errors import StoreError
from core.logging import get_logger

logger = get_logger(__name__)

SUSPICIOUS_WINDOW = timedelta(hours=1)
STATS_WINDOW = timedelta(days=7)


class SecurityEvent(BaseModel):
    type: Literal["failed_login", "suspicious_activity", "unauthorized_access", "data_breach", "malware_detected"]
    severity: Literal["low", "medium", "high", "critical"]
    title: str
    description: str
    ip_address: Optional[str] = None
    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def failed_login_severity(attempts: int, max_attempts: int = 5) -> str:
    if attempts >= max_attempts:
        return "high"
    if attempts >= 3:
        return "medium"
    return "low"


def sanitize_input(text: str) -> str:
    """Strip angle brackets, javascript: URLs and inline event handlers."""
    text = re.sub(r"[<>]", "", text)
    text = re.sub(r"javascript:", "", text, flags=re.IGNORECASE)
    text = re.sub(r"on\w+=", "", text, flags=re.IGNORECASE)
    return text.strip()


class SecurityMonitor:
    """Writes security_alerts rows and enforces login lockout."""

    def __init__(self, database: Database, cache: CacheService, settings: Settings):
        self.database = database
        self.cache = cache
        self.settings = settings

    async def log_security_event(self, event: SecurityEvent) -> Dict[str, Any]:
        """Record an event. High and critical events also raise an admin system alert."""
        row = await self.database.insert("security_alerts", {
            "type": event.type,
            "severity": event.severity,
            "title": event.title,
            "description": event.description,
            "ip_address": event.ip_address,
            "user_id": event.user_id,
            "user_agent": event.user_agent,
            "location": event.location,
            "metadata_json": event.metadata,
            "resolved": False,
        })
        logger.info("Security event logged", type=event.type, severity=event.severity, user_id=event.user_id)

        if event.severity in ("high", "critical"):
            await self._create_system_alert(event)
        return row

    async def _create_system_alert(self, event: SecurityEvent) -> None:
        try:
            await self.database.insert("system_alerts", {
                "title": f"Security Alert: {event.title}",
                "message": event.description,
                "type": "error",
                "priority": "critical" if event.severity == "critical" else "high",
                "is_active": True,
                "is_dismissible": True,
                "target_audience": "admins",
                "created_by": "Security System",
            })
        except StoreError as e:
            logger.warning("System alert for security event failed", title=event.title, error=str(e))

    def is_locked(self, user: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        locked_until = parse_timestamp(user.get("locked_until"))
        if locked_until is None:
            return False
        return locked_until > (now or datetime.now(timezone.utc))

    async def track_failed_login(self, phone_number: str, ip_address: Optional[str] = None,
                                 user_agent: Optional[str] = None) -> Dict[str, Any]:
        """Count a failed login; locks the account once the limit is reached."""
        user = await self.database.select_one("users", {"phone_number": phone_number})
        max_attempts = self.settings.login_max_attempts

        if user is None:
            await self.log_security_event(SecurityEvent(
                type="failed_login",
                severity="medium",
                title="Failed Login - Invalid User",
                description=f"Failed login attempt for non-existent phone number: {phone_number}",
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"phone_number": phone_number},
            ))
            return {"attempts": 1, "locked": False}

        attempts = (user.get("login_attempts") or 0) + 1
        locked = attempts >= max_attempts
        locked_until = (datetime.now(timezone.utc) + timedelta(minutes=self.settings.lockout_minutes)
                        if locked else None)
        await self.database.update("users", {"login_attempts": attempts, "locked_until": locked_until},
                                   {"id": user["id"]})

        await self.log_security_event(SecurityEvent(
            type="failed_login",
            severity=failed_login_severity(attempts, max_attempts),
            title="Failed Login Attempt",
            description=(f"Failed login attempt for user {user.get('full_name')} ({phone_number}). "
                         f"Attempt {attempts}/{max_attempts}."),
            ip_address=ip_address,
            user_id=user["id"],
            user_agent=user_agent,
            metadata={"attempts": attempts, "phone_number": phone_number},
        ))
        if locked:
            logger.warning("Account locked", user_id=user["id"], attempts=attempts)
        return {"attempts": attempts, "locked": locked}

    async def track_successful_login(self, user_id: str, ip_address: Optional[str] = None,
                                     user_agent: Optional[str] = None) -> None:
        """Reset the failure counter and lock, stamp last_login, write an audit row."""
        rows = await self.database.update("users", {
            "login_attempts": 0,
            "locked_until": None,
            "last_login": datetime.now(timezone.utc),
        }, {"id": user_id})
        full_name = rows[0].get("full_name") if rows else None

        await self.log_security_event(SecurityEvent(
            type="suspicious_activity",
            severity="low",
            title="Successful Login",
            description=f"User {full_name} logged in successfully",
            ip_address=ip_address,
            user_id=user_id,
            user_agent=user_agent,
            metadata={"event_type": "successful_login"},
        ))

    async def detect_suspicious_activity(self, user_id: str, ip_address: Optional[str] = None,
                                         user_agent: Optional[str] = None) -> Dict[str, Any]:
        """Flag access from a new IP when more than two IPs were seen within the last hour."""
        since = datetime.now(timezone.utc) - SUSPICIOUS_WINDOW
        recent = await self.database.select(
            "security_alerts", {"user_id": user_id, "type": "suspicious_activity"}, created_after=since
        )
        unique_ips = sorted({row["ip_address"] for row in recent if row.get("ip_address")})

        if len(unique_ips) > 2 and ip_address and ip_address not in unique_ips:
            user = await self.database.select_one("users", {"id": user_id})
            await self.log_security_event(SecurityEvent(
                type="suspicious_activity",
                severity="high",
                title="Unusual Access Pattern Detected",
                description=(f"User {user.get('full_name') if user else user_id} is accessing the system "
                             f"from multiple IP addresses within a short time period"),
                ip_address=ip_address,
                user_id=user_id,
                user_agent=user_agent,
                metadata={
                    "unique_ips": unique_ips,
                    "current_ip": ip_address,
                    "detection_reason": "multiple_ips_short_time",
                },
            ))
            return {"suspicious": True, "reason": "multiple_ips"}

        return {"suspicious": False}

    async def resolve_security_alert(self, alert_id: str, resolved_by: str) -> Dict[str, Any]:
        await self.database.get_by_id("security_alerts", alert_id)
        rows = await self.database.update("security_alerts", {
            "resolved": True,
            "resolved_at": datetime.now(timezone.utc),
            "resolved_by": resolved_by,
        }, {"id": alert_id})
        return rows[0]

    async def get_security_stats(self) -> Dict[str, int]:
        since = datetime.now(timezone.utc) - STATS_WINDOW
        alerts = await self.database.select("security_alerts", created_after=since)
        return {
            "total_alerts": len(alerts),
            "critical_alerts": sum(1 for a in alerts if a["severity"] == "critical"),
            "high_alerts": sum(1 for a in alerts if a["severity"] == "high"),
            "medium_alerts": sum(1 for a in alerts if a["severity"] == "medium"),
            "low_alerts": sum(1 for a in alerts if a["severity"] == "low"),
            "resolved_alerts": sum(1 for a in alerts if a["resolved"]),
            "unresolved_alerts": sum(1 for a in alerts if not a["resolved"]),
        }

    async def check_rate_limit(self, user_id: str, action: str, max_attempts: Optional[int] = None,
                               window_seconds: Optional[int] = None) -> bool:
        """Sliding-window limiter. Returns False once max_attempts fall inside the window."""
        max_attempts = max_attempts or self.settings.rate_limit_attempts
        window_seconds = window_seconds or self.settings.rate_limit_window
        key = f"{RATE_LIMIT_PREFIX}{user_id}:{action}"
        now = self.cache.clock()

        attempts: List[float] = await self.cache.get_json(key) or []
        attempts = [t for t in attempts if now - t < window_seconds]

        if len(attempts) >= max_attempts:
            logger.warning("Rate limit exceeded", user_id=user_id, action=action)
            return False

        attempts.append(now)
        await self.cache.set_json(key, attempts, ttl=window_seconds)
        return True
