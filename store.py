import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import settings as default_settings
from database import BotUser, CachedLicense, CommandLog, ValidationLog, create_session_factory, utcnow
from errors import StoreUnavailable
from models import (
    BotStats,
    LicenseRecord,
    LicenseStatus,
    LicenseUsage,
    UsageStats,
    UserProfile,
    ValidationLogEntry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
DEFAULT_PERIOD = "30d"

def period_days(period: str) -> int:
    return PERIOD_DAYS.get(period, PERIOD_DAYS[DEFAULT_PERIOD])

def _profile(user: BotUser) -> UserProfile:
    return UserProfile(
        identity=user.identity,
        username=user.username,
        email=user.email,
        created_at=user.created_at,
    )

def _record(row: CachedLicense, identity: str) -> LicenseRecord:
    try:
        status = LicenseStatus(row.status)
    except ValueError:
        status = LicenseStatus.UNKNOWN
    return LicenseRecord(
        key=row.license_key,
        id=row.remote_id,
        status=status,
        plan_name=row.plan_name,
        expires_at=row.expires_at,
        owning_identity=identity,
        application_name=row.application_name,
        features=list(row.features or []),
    )

class LocalStore:
    """
    Local cache of users, license associations and usage logs.

    SQLAlchemy sessions are synchronous, so each operation runs on a worker
    thread. Operations are serialized through one lock, which also keeps
    concurrent writes from different invocations from interleaving.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_url(cls, database_url: Optional[str] = None) -> "LocalStore":
        url = database_url or default_settings.DATABASE_URL
        try:
            return cls(create_session_factory(url))
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Could not open local store: {e}") from e

    async def _run(self, action: str, work: Callable[[Session], T]) -> T:
        if self._closed:
            raise StoreUnavailable("Local store is closed")
        async with self._lock:
            return await asyncio.to_thread(self._run_sync, action, work)

    def _run_sync(self, action: str, work: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Local store operation '%s' failed: %s", action, e)
            raise StoreUnavailable(f"Local store unavailable during {action}") from e
        finally:
            db.close()

    @staticmethod
    def _user_row(db: Session, identity: str, username: Optional[str] = None) -> BotUser:
        user = db.query(BotUser).filter(BotUser.identity == identity).first()
        if user is None:
            user = BotUser(identity=identity, username=username)
            db.add(user)
            db.flush()
        elif username and user.username != username:
            user.username = username
        return user

    async def get_or_create_user(self, identity: str, username: Optional[str] = None) -> UserProfile:
        return await self._run("get_or_create_user", lambda db: _profile(self._user_row(db, identity, username)))

    async def get_user(self, identity: str) -> Optional[UserProfile]:
        def work(db: Session) -> Optional[UserProfile]:
            user = db.query(BotUser).filter(BotUser.identity == identity).first()
            return _profile(user) if user else None

        return await self._run("get_user", work)

    async def update_user(
        self, identity: str, username: Optional[str] = None, email: Optional[str] = None
    ) -> UserProfile:
        def work(db: Session) -> UserProfile:
            user = self._user_row(db, identity)
            if username is not None:
                user.username = username
            if email is not None:
                user.email = email
            user.updated_at = utcnow()
            db.flush()
            return _profile(user)

        return await self._run("update_user", work)

    async def get_user_licenses(self, identity: str) -> List[LicenseRecord]:
        def work(db: Session) -> List[LicenseRecord]:
            user = db.query(BotUser).filter(BotUser.identity == identity).first()
            if user is None:
                return []
            rows = (
                db.query(CachedLicense)
                .filter(CachedLicense.user_id == user.id)
                .order_by(CachedLicense.created_at.desc(), CachedLicense.id.desc())
                .all()
            )
            return [_record(row, identity) for row in rows]

        return await self._run("get_user_licenses", work)

    async def get_license(self, license_key: str) -> Optional[LicenseRecord]:
        def work(db: Session) -> Optional[LicenseRecord]:
            row = db.query(CachedLicense).filter(CachedLicense.license_key == license_key).first()
            return _record(row, row.user.identity) if row else None

        return await self._run("get_license", work)

    async def save_license(self, identity: str, record: LicenseRecord) -> LicenseRecord:
        """Insert or refresh the cached copy of `record`, owned by `identity`."""
        def work(db: Session) -> LicenseRecord:
            user = self._user_row(db, identity)
            row = db.query(CachedLicense).filter(CachedLicense.license_key == record.key).first()
            if row is None:
                row = CachedLicense(license_key=record.key)
                db.add(row)
            row.user_id = user.id
            row.remote_id = record.id
            row.status = record.status.value
            row.plan_name = record.plan_name
            row.application_name = record.application_name
            row.expires_at = record.expires_at.replace(tzinfo=None) if record.expires_at else None
            row.features = list(record.features)
            row.updated_at = utcnow()
            db.flush()
            return _record(row, identity)

        return await self._run("save_license", work)

    async def update_license_status(self, license_key: str, status: LicenseStatus) -> bool:
        def work(db: Session) -> bool:
            row = db.query(CachedLicense).filter(CachedLicense.license_key == license_key).first()
            if row is None:
                return False
            row.status = status.value
            row.updated_at = utcnow()
            return True

        return await self._run("update_license_status", work)

    async def log_validation(self, identity: str, license_key: str, succeeded: bool) -> ValidationLogEntry:
        def work(db: Session) -> ValidationLogEntry:
            user = self._user_row(db, identity)
            entry = ValidationLog(user_id=user.id, license_key=license_key, is_valid=succeeded)
            db.add(entry)
            db.flush()
            return ValidationLogEntry(
                caller_identity=identity,
                license_key=license_key,
                succeeded=succeeded,
                timestamp=entry.created_at,
            )

        return await self._run("log_validation", work)

    async def log_command(self, identity: str, command: str):
        def work(db: Session):
            user = self._user_row(db, identity)
            db.add(CommandLog(user_id=user.id, command=command))

        await self._run("log_command", work)

    async def get_validation_count(self, identity: Optional[str] = None, since: Optional[datetime] = None) -> int:
        def work(db: Session) -> int:
            query = db.query(ValidationLog)
            if identity is not None:
                query = query.join(BotUser, BotUser.id == ValidationLog.user_id).filter(BotUser.identity == identity)
            if since is not None:
                query = query.filter(ValidationLog.created_at >= since)
            return query.count()

        return await self._run("get_validation_count", work)

    async def get_usage_stats(self, identity: str, period: str = DEFAULT_PERIOD) -> UsageStats:
        days = period_days(period)
        since = utcnow() - timedelta(days=days)

        def work(db: Session) -> UsageStats:
            user = db.query(BotUser).filter(BotUser.identity == identity).first()
            if user is None:
                return UsageStats(period=period)

            in_period = (ValidationLog.user_id == user.id, ValidationLog.created_at >= since)
            total = db.query(ValidationLog).filter(*in_period).count()
            successful = db.query(ValidationLog).filter(*in_period, ValidationLog.is_valid.is_(True)).count()

            count = func.count(ValidationLog.id)
            breakdown = (
                db.query(ValidationLog.license_key, count)
                .filter(*in_period)
                .group_by(ValidationLog.license_key)
                .order_by(count.desc(), ValidationLog.license_key)
                .all()
            )
            day = func.date(ValidationLog.created_at)
            peak = (
                db.query(day, count)
                .filter(*in_period)
                .group_by(day)
                .order_by(count.desc())
                .first()
            )

            return UsageStats(
                period=period,
                total_validations=total,
                successful_validations=successful,
                failed_validations=total - successful,
                active_licenses=len(breakdown),
                most_used_license=breakdown[0][0] if breakdown else None,
                average_daily=round(total / days, 2),
                peak_day=str(peak[0]) if peak else None,
                license_breakdown=[LicenseUsage(license_key=key, validations=n) for key, n in breakdown],
            )

        return await self._run("get_usage_stats", work)

    async def get_bot_stats(self) -> BotStats:
        def work(db: Session) -> BotStats:
            return BotStats(
                total_users=db.query(BotUser).count(),
                total_licenses=db.query(CachedLicense).count(),
                total_commands=db.query(CommandLog).count(),
                total_validations=db.query(ValidationLog).count(),
            )

        return await self._run("get_bot_stats", work)

    async def ping(self) -> bool:
        return await self._run("ping", lambda db: db.execute(text("SELECT 1")).scalar() == 1)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        async with self._lock:
            bind = self._session_factory.kw.get("bind")
            if bind is not None:
                bind.dispose()
        logger.info("Local store closed")
