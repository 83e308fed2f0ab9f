from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from errors import ErrorKind

class AuthorizationTier(IntEnum):
    USER = 1
    ADMIN = 2
    OWNER = 3

    @property
    def label(self) -> str:
        return self.name.lower()

class CommandInvocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    subcommand: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)
    caller_identity: str
    caller_roles: FrozenSet[str] = frozenset()
    caller_is_administrator: bool = False

    @property
    def qualified_name(self) -> str:
        return f"{self.name} {self.subcommand}" if self.subcommand else self.name

class Success(BaseModel):
    payload: Any = None
    degraded: bool = False

class Failure(BaseModel):
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

HandlerResult = Union[Success, Failure]

class LicenseStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    UNKNOWN = "unknown"

class LicenseRecord(BaseModel):
    key: str
    id: Optional[str] = None
    status: LicenseStatus = LicenseStatus.UNKNOWN
    plan_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    owning_identity: Optional[str] = None
    application_name: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    # Upstream owner-ish fields (email, issuedTo, ...) kept for owner matching
    owner_fields: Dict[str, str] = Field(default_factory=dict)

class ValidationOutcome(BaseModel):
    key: str
    valid: bool
    message: Optional[str] = None
    license_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    features: List[str] = Field(default_factory=list)

class UserProfile(BaseModel):
    identity: str
    username: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None

class ValidationLogEntry(BaseModel):
    caller_identity: str
    license_key: str
    succeeded: bool
    timestamp: datetime

class LicenseUsage(BaseModel):
    license_key: str
    validations: int

class UsageStats(BaseModel):
    period: str
    total_validations: int = 0
    successful_validations: int = 0
    failed_validations: int = 0
    active_licenses: int = 0
    most_used_license: Optional[str] = None
    average_daily: float = 0.0
    peak_day: Optional[str] = None
    license_breakdown: List[LicenseUsage] = Field(default_factory=list)

class BotStats(BaseModel):
    total_users: int = 0
    total_licenses: int = 0
    total_commands: int = 0
    total_validations: int = 0

class NotSupported(BaseModel):
    """Returned instead of data when the licensing API has no endpoint for an operation."""
    operation: str
    reason: str

class RenderableResponse(BaseModel):
    ok: bool
    title: str
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    payload: Any = None
    details: Dict[str, Any] = Field(default_factory=dict)
    degraded: bool = False
    ephemeral: bool = False
    edit_existing: bool = False

# HTTP payloads
class InteractionRequest(BaseModel):
    name: str
    subcommand: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    userId: str
    roleIds: List[str] = Field(default_factory=list)
    isAdministrator: bool = False

    def to_invocation(self) -> CommandInvocation:
        return CommandInvocation(
            name=self.name,
            subcommand=self.subcommand,
            arguments=dict(self.options),
            caller_identity=self.userId,
            caller_roles=frozenset(self.roleIds),
            caller_is_administrator=self.isAdministrator,
        )

class HealthCheckResponse(BaseModel):
    status: str
    bot: str
    uptime: float
    timestamp: str
    version: str

class StatsResponse(BaseModel):
    commands: int
    database: Optional[BotStats] = None
    uptime: float
    memoryRssMb: float
    version: str

class WebhookAck(BaseModel):
    received: bool
    event: Optional[str] = None
