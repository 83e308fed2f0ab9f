from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, JSON, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

# Database Models
class BotUser(Base):
    __tablename__ = "bot_users"

    id = Column(Integer, primary_key=True, index=True)
    identity = Column(String(64), unique=True, nullable=False, index=True)  # Chat platform user id
    username = Column(String(100))
    email = Column(String(255))

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    licenses = relationship("CachedLicense", back_populates="user")

class CachedLicense(Base):
    __tablename__ = "licenses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("bot_users.id"), nullable=False, index=True)
    license_key = Column(String(64), unique=True, nullable=False, index=True)
    remote_id = Column(String(64))

    status = Column(String(20), default="active")
    plan_name = Column(String(100))
    application_name = Column(String(255))
    expires_at = Column(DateTime)
    features = Column(JSON, default=list)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("BotUser", back_populates="licenses")

class CommandLog(Base):
    __tablename__ = "commands"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("bot_users.id"), nullable=False)
    command = Column(Text, nullable=False)
    executed_at = Column(DateTime, default=utcnow, index=True)

class ValidationLog(Base):
    """Append-only; rows are never updated."""
    __tablename__ = "validations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("bot_users.id"), nullable=False, index=True)
    license_key = Column(String(64), nullable=False)
    is_valid = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)

@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

def create_session_factory(database_url: str) -> sessionmaker:
    """
    Build an engine for `database_url`, create missing tables and return a
    session factory bound to it.
    """
    engine_args = {}
    if database_url.startswith("sqlite"):
        engine_args["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            engine_args["poolclass"] = StaticPool

    engine = create_engine(database_url, **engine_args)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
