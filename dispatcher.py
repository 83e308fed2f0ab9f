"""
Command dispatch pipeline.

An invocation is resolved against an immutable command table, gated by the
caller's authorization tier, has its arguments validated, and is handed to
the command's handler together with the API client and the local store.
Whatever happens, the caller gets back exactly one RenderableResponse.
"""

import logging
from collections import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from config import settings as default_settings
from errors import BotError, ErrorKind, InvalidFormat, ValidationError
from models import AuthorizationTier, CommandInvocation, Failure, HandlerResult, RenderableResponse, Success
from permissions import PermissionResolver
from validators import (
    validate_choice,
    validate_email,
    validate_identity,
    validate_integer,
    validate_license_key,
)

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred while executing this command."

_FAILURE_TITLES = {
    ErrorKind.VALIDATION_ERROR: "Invalid input",
    ErrorKind.PERMISSION_DENIED: "Permission denied",
    ErrorKind.UPSTREAM_ERROR: "Licensing service error",
    ErrorKind.STORE_UNAVAILABLE: "Local data unavailable",
    ErrorKind.UNKNOWN_COMMAND: "Unknown command",
    ErrorKind.INTERNAL_ERROR: "Error",
}

class ParameterKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    CHOICE = "choice"
    LICENSE_KEY = "license_key"
    IDENTITY = "identity"
    EMAIL = "email"

@dataclass(frozen=True)
class ParameterSpec:
    """
    One command option.

    `minimum_tier` gates supplying the option at all. For an identity option
    naming the caller themself the gate does not apply, so `/user info
    user:<own id>` stays open to users.
    """
    name: str
    kind: ParameterKind = ParameterKind.STRING
    required: bool = False
    description: str = ""
    minimum: Optional[int] = None
    maximum: Optional[int] = None
    choices: Tuple[str, ...] = ()
    default: Any = None
    max_length: int = 200
    minimum_tier: Optional[AuthorizationTier] = None

    def gated_for(self, value: Any, caller_identity: str) -> bool:
        if self.minimum_tier is None or value is None:
            return False
        return not (self.kind is ParameterKind.IDENTITY and value == caller_identity)

    def parse(self, raw: Any) -> Any:
        if self.kind is ParameterKind.INTEGER:
            return validate_integer(
                raw,
                self.minimum if self.minimum is not None else -(2 ** 31),
                self.maximum if self.maximum is not None else 2 ** 31 - 1,
            )
        if self.kind is ParameterKind.CHOICE:
            return validate_choice(raw, self.choices)
        if self.kind is ParameterKind.LICENSE_KEY:
            return validate_license_key(raw)
        if self.kind is ParameterKind.IDENTITY:
            return validate_identity(raw)
        if self.kind is ParameterKind.EMAIL:
            return validate_email(raw)

        if not isinstance(raw, str):
            raise InvalidFormat("Expected text")
        value = raw.strip()
        if not value or len(value) > self.max_length:
            raise InvalidFormat(f"Expected 1-{self.max_length} characters")
        return value

def validate_arguments(parameters: Iterable[ParameterSpec], raw: Mapping[str, Any]) -> Dict[str, Any]:
    specs = {spec.name: spec for spec in parameters}
    unexpected = sorted(set(raw) - set(specs))
    if unexpected:
        raise InvalidFormat(f"Unexpected option(s): {', '.join(unexpected)}")

    arguments: Dict[str, Any] = {}
    for name, spec in specs.items():
        value = raw.get(name)
        if value is None or value == "":
            if spec.required:
                raise InvalidFormat(f"Missing required option '{name}'")
            arguments[name] = spec.default
            continue
        try:
            arguments[name] = spec.parse(value)
        except ValidationError as e:
            raise type(e)(f"Option '{name}': {e.message}") from e
    return arguments

@dataclass
class InvocationState:
    """
    Reply bookkeeping for one invocation.

    `deferred` means an acknowledgement was already sent, so the final
    response must edit it instead of replying. `responded` is set once the
    final response exists; the rendering layer must not render twice.
    """
    deferred: bool = False
    responded: bool = False

    def mark_responded(self) -> bool:
        if self.responded:
            return False
        self.responded = True
        return True

@dataclass
class HandlerContext:
    invocation: CommandInvocation
    arguments: Dict[str, Any]
    tier: AuthorizationTier
    api: Any
    store: Any
    settings: Any
    state: InvocationState
    commands: "CommandTable"

    @property
    def caller(self) -> str:
        return self.invocation.caller_identity

Handler = Callable[[HandlerContext], Awaitable[HandlerResult]]

@dataclass(frozen=True)
class CommandDescriptor:
    name: str
    handler: Handler
    subcommand: Optional[str] = None
    description: str = ""
    minimum_tier: Optional[AuthorizationTier] = None
    parameters: Tuple[ParameterSpec, ...] = field(default_factory=tuple)

    @property
    def key(self) -> Tuple[str, Optional[str]]:
        return (self.name, self.subcommand)

    @property
    def qualified_name(self) -> str:
        return f"{self.name} {self.subcommand}" if self.subcommand else self.name

class CommandTable(abc.Mapping):
    """Read-only mapping of (name, subcommand) to descriptor, fixed at construction."""

    def __init__(self, descriptors: Iterable[CommandDescriptor]):
        table: Dict[Tuple[str, Optional[str]], CommandDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.key in table:
                raise ValueError(f"Duplicate command registration: /{descriptor.qualified_name}")
            table[descriptor.key] = descriptor
        self._table = table

    def __getitem__(self, key: Tuple[str, Optional[str]]) -> CommandDescriptor:
        return self._table[key]

    def __iter__(self) -> Iterator[Tuple[str, Optional[str]]]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def lookup(self, name: str, subcommand: Optional[str] = None) -> Optional[CommandDescriptor]:
        return self._table.get((name, subcommand))

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(dict.fromkeys(name for name, _ in self._table))

def failure_from_error(error: BotError) -> Failure:
    return Failure(kind=error.kind, message=error.message, details=error.details)

class Dispatcher:
    def __init__(
        self,
        commands: CommandTable,
        api: Any,
        store: Any,
        permissions: Optional[PermissionResolver] = None,
        settings=None,
    ):
        self.commands = commands
        self.api = api
        self.store = store
        self.settings = settings or default_settings
        self.permissions = permissions or PermissionResolver.from_settings(self.settings)

    async def dispatch(self, invocation: CommandInvocation) -> RenderableResponse:
        state = InvocationState()
        result = await self._execute(invocation, state)
        return self._render(invocation, state, result)

    async def _execute(self, invocation: CommandInvocation, state: InvocationState) -> HandlerResult:
        descriptor = self.commands.lookup(invocation.name, invocation.subcommand)
        if descriptor is None:
            logger.info("Unknown command /%s from %s", invocation.qualified_name, invocation.caller_identity)
            return Failure(
                kind=ErrorKind.UNKNOWN_COMMAND,
                message=f"Unknown command: /{invocation.qualified_name}",
            )

        try:
            tier = self.permissions.resolve_tier(
                invocation.caller_identity,
                invocation.caller_roles,
                invocation.caller_is_administrator,
            )
            if descriptor.minimum_tier is not None:
                self.permissions.require_tier(tier, descriptor.minimum_tier)
            arguments = validate_arguments(descriptor.parameters, invocation.arguments)
            for spec in descriptor.parameters:
                if spec.gated_for(arguments[spec.name], invocation.caller_identity):
                    self.permissions.require_tier(tier, spec.minimum_tier)
        except BotError as e:
            logger.info("Rejected /%s from %s: %s", descriptor.qualified_name, invocation.caller_identity, e.message)
            return failure_from_error(e)

        context = HandlerContext(
            invocation=invocation,
            arguments=arguments,
            tier=tier,
            api=self.api,
            store=self.store,
            settings=self.settings,
            state=state,
            commands=self.commands,
        )
        state.deferred = True

        try:
            result = await descriptor.handler(context)
        except BotError as e:
            logger.warning("/%s failed with %s: %s", descriptor.qualified_name, e.kind.value, e.message)
            result = failure_from_error(e)
        except Exception as e:
            logger.exception("Error executing command /%s: %s", descriptor.qualified_name, e)
            result = Failure(kind=ErrorKind.INTERNAL_ERROR, message=GENERIC_ERROR_MESSAGE)
        else:
            if not isinstance(result, (Success, Failure)):
                logger.error("Handler for /%s returned %r instead of a result", descriptor.qualified_name, result)
                result = Failure(kind=ErrorKind.INTERNAL_ERROR, message=GENERIC_ERROR_MESSAGE)

        await self._record_command(invocation)
        logger.info(
            "Command executed: /%s by %s (%s)",
            descriptor.qualified_name,
            invocation.caller_identity,
            "ok" if isinstance(result, Success) else result.kind.value,
        )
        return result

    async def _record_command(self, invocation: CommandInvocation):
        try:
            await self.store.log_command(invocation.caller_identity, invocation.qualified_name)
        except BotError as e:
            logger.warning("Could not record /%s: %s", invocation.qualified_name, e.message)

    def _render(self, invocation: CommandInvocation, state: InvocationState, result: HandlerResult) -> RenderableResponse:
        if not state.mark_responded():
            logger.warning("Invocation /%s already responded to", invocation.qualified_name)

        if isinstance(result, Success):
            return RenderableResponse(
                ok=True,
                title=f"/{invocation.qualified_name}",
                payload=result.payload,
                degraded=result.degraded,
                edit_existing=state.deferred,
            )

        return RenderableResponse(
            ok=False,
            title=_FAILURE_TITLES[result.kind],
            kind=result.kind,
            message=result.message,
            details=result.details,
            ephemeral=True,
            edit_existing=state.deferred,
        )
