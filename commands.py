"""
Slash command handlers and the command table built from them.

Handlers receive a HandlerContext with validated arguments and return a
Success or Failure. Upstream or store errors on a command's primary data
source are raised and rendered by the dispatcher; supplementary lookups
(caching, usage logging, the second half of a fan-out) degrade quietly.
"""

import asyncio
import logging
import math
from functools import partial
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple, TypeVar

from config import settings as default_settings
from dispatcher import CommandDescriptor, CommandTable, HandlerContext, ParameterKind, ParameterSpec
from errors import BotError, StoreUnavailable, UpstreamError, ValidationError
from license_client import retry_with_backoff
from models import AuthorizationTier, LicenseRecord, LicenseStatus, NotSupported, Success
from store import PERIOD_DAYS

logger = logging.getLogger(__name__)

T = TypeVar("T")

LICENSES_PER_PAGE = 5
PERIOD_CHOICES = tuple(PERIOD_DAYS)
PLAN_CHOICES = ("monthly", "yearly", "lifetime")
CURRENCY_CHOICES = ("USD", "EUR", "GBP")
OVERVIEW_METRICS = ("revenue", "licenses", "users", "conversions")

_PERIOD_TEXT = {"7d": "7 days", "30d": "30 days", "90d": "90 days", "1y": "1 year"}

class OwnerMatcher:
    """
    Decides whether an upstream license belongs to a caller.

    Each configured owner field (``issuedTo``, ``email``, ...) is compared
    case-insensitively with every identifier known for the caller: their
    platform id and, once they have set one, their email. The upstream
    documents no precedence between these fields, so a license issued to an
    address the bot has never seen is a false negative.
    """

    def __init__(self, fields: Iterable[str]):
        self.fields = tuple(fields)

    def __call__(self, record: LicenseRecord, identifiers: Iterable[Optional[str]]) -> bool:
        wanted = {value.strip().lower() for value in identifiers if value and value.strip()}
        return any(
            record.owner_fields.get(name, "").strip().lower() in wanted
            for name in self.fields
        )

async def _supplementary(operation: Awaitable[T], what: str) -> Optional[T]:
    try:
        return await operation
    except (StoreUnavailable, UpstreamError) as e:
        logger.warning("Skipping %s: %s", what, e.message)
        return None

def _license_payload(record: LicenseRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json", exclude={"owner_fields"})

def _paginate(items: List[T], page: int, per_page: int) -> Tuple[List[T], int]:
    total_pages = max(1, math.ceil(len(items) / per_page))
    start = (page - 1) * per_page
    return items[start:start + per_page], total_pages

def _raise_on_unhandled(*results: Any):
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, BotError):
            raise result

# License Commands

async def license_validate(ctx: HandlerContext):
    key = ctx.arguments["key"]
    outcome = await ctx.api.validate_license(key)
    entry = await _supplementary(
        ctx.store.log_validation(ctx.caller, key, outcome.valid), "validation log"
    )
    return Success(payload={"validation": outcome.model_dump(mode="json"), "logged": entry is not None})

async def license_info(ctx: HandlerContext):
    key = ctx.arguments["key"]
    try:
        record = await ctx.api.get_license(key)
    except UpstreamError as e:
        if e.status_code == 404:
            raise
        cached = await _supplementary(ctx.store.get_license(key), "cached license lookup")
        if cached is None:
            raise
        logger.info("Serving cached license %s after upstream failure", key)
        return Success(payload={"license": _license_payload(cached), "source": "local"}, degraded=True)

    return Success(payload={"license": _license_payload(record), "source": "remote"})

async def license_list(ctx: HandlerContext, matcher: OwnerMatcher):
    page = ctx.arguments["page"]
    app_id = ctx.settings.LICENSE_APP_ID
    records: Optional[List[LicenseRecord]] = None
    source = "local"

    if app_id:
        profile, remote = await asyncio.gather(
            _supplementary(ctx.store.get_user(ctx.caller), "profile lookup"),
            ctx.api.list_licenses_for_app(app_id),
            return_exceptions=True,
        )
        _raise_on_unhandled(profile, remote)
        if isinstance(remote, UpstreamError):
            logger.warning("License listing unavailable upstream, falling back to cache: %s", remote.message)
        else:
            email = profile.email if profile else None
            records = [record for record in remote if matcher(record, (ctx.caller, email))]
            source = "remote"
            for record in records:
                await _supplementary(ctx.store.save_license(ctx.caller, record), "license cache refresh")
    else:
        logger.debug("LICENSE_APP_ID not configured; listing cached licenses only")

    if records is None:
        records = await ctx.store.get_user_licenses(ctx.caller)

    licenses, total_pages = _paginate(records, page, LICENSES_PER_PAGE)
    return Success(
        payload={
            "licenses": [_license_payload(record) for record in licenses],
            "page": page,
            "total_pages": total_pages,
            "total": len(records),
            "source": source,
        },
        degraded=source == "local",
    )

async def license_create(ctx: HandlerContext):
    app_id = ctx.arguments["app"] or ctx.settings.LICENSE_APP_ID
    if not app_id:
        raise ValidationError("No application configured; pass the 'app' option")

    owner = ctx.arguments["user"] or ctx.caller
    data = {"plan": ctx.arguments["plan"], "issuedTo": owner}
    if ctx.arguments["email"]:
        data["issuedEmail"] = ctx.arguments["email"]

    record = await ctx.api.create_license(app_id, data)
    cached = await _supplementary(ctx.store.save_license(owner, record), "license cache")
    return Success(payload={"license": _license_payload(record), "owner": owner, "cached": cached is not None})

async def license_update(ctx: HandlerContext):
    patch = {
        name: ctx.arguments[name]
        for name in ("status", "plan")
        if ctx.arguments[name] is not None
    }
    if not patch:
        raise ValidationError("Nothing to update; pass 'status' or 'plan'")

    record = await ctx.api.update_license(ctx.arguments["id"], patch)
    await _supplementary(ctx.store.update_license_status(record.key, record.status), "license cache")
    return Success(payload={"license": _license_payload(record)})

async def license_revoke(ctx: HandlerContext):
    license_id = ctx.arguments["id"]
    # Revocation is an idempotent DELETE upstream
    record = await retry_with_backoff(lambda: ctx.api.revoke_license(license_id))
    if record is not None:
        await _supplementary(
            ctx.store.update_license_status(record.key, LicenseStatus.REVOKED), "license cache"
        )
    return Success(payload={
        "id": license_id,
        "revoked": True,
        "license": _license_payload(record) if record else None,
    })

# User Commands

async def user_create(ctx: HandlerContext):
    data = {"email": ctx.arguments["email"]}
    if ctx.arguments["name"]:
        data["name"] = ctx.arguments["name"]
    user = await ctx.api.create_user(data)
    return Success(payload={"user": user})

async def user_info(ctx: HandlerContext):
    target = ctx.arguments["user"] or ctx.caller

    remote = await ctx.api.get_user(target)
    if not isinstance(remote, NotSupported):
        return Success(payload={"user": remote, "source": "remote"})

    profile, licenses = await asyncio.gather(
        ctx.store.get_user(target),
        _supplementary(ctx.store.get_user_licenses(target), "license lookup"),
        return_exceptions=True,
    )
    _raise_on_unhandled(profile, licenses)
    if isinstance(profile, BotError):
        raise profile
    return Success(payload={
        "user": profile.model_dump(mode="json") if profile else None,
        "found": profile is not None,
        "license_count": len(licenses) if licenses is not None else None,
        "source": "local",
    })

async def user_update(ctx: HandlerContext):
    name, email = ctx.arguments["name"], ctx.arguments["email"]
    if name is None and email is None:
        raise ValidationError("Nothing to update; pass 'name' or 'email'")

    profile = await ctx.store.update_user(ctx.caller, username=name, email=email)
    patch = {key: value for key, value in (("name", name), ("email", email)) if value is not None}
    synced = await _supplementary(ctx.api.update_user(ctx.caller, patch), "upstream user sync")
    return Success(payload={"user": profile.model_dump(mode="json"), "synced": synced is not None})

# Product Commands

async def product_create(ctx: HandlerContext):
    data = {
        "name": ctx.arguments["name"],
        "price": ctx.arguments["price"],
        "currency": ctx.arguments["currency"],
    }
    product = await ctx.api.create_product(data)
    return Success(payload={"product": product})

async def product_info(ctx: HandlerContext):
    return Success(payload={"product": await ctx.api.get_product(ctx.arguments["id"])})

async def product_list(ctx: HandlerContext):
    page, limit = ctx.arguments["page"], ctx.arguments["limit"]
    products = await ctx.api.list_products(page, limit)
    return Success(payload={"products": products["items"], "total": products["total"], "page": page})

# Analytics Commands

async def analytics_overview(ctx: HandlerContext):
    period = ctx.arguments["period"]
    analytics = await ctx.api.get_analytics(period, OVERVIEW_METRICS)
    return Success(payload={"period": period, "period_text": _PERIOD_TEXT[period], "analytics": analytics})

async def analytics_license(ctx: HandlerContext):
    key, period = ctx.arguments["key"], ctx.arguments["period"]
    validation = await ctx.api.validate_license(key)
    if not validation.valid:
        raise UpstreamError("The provided license key is invalid or not found", status_code=404)

    analytics = await ctx.api.get_license_analytics(validation.license_id or key, period)
    return Success(payload={
        "key": key,
        "period": period,
        "period_text": _PERIOD_TEXT[period],
        "analytics": analytics,
    })

async def analytics_usage(ctx: HandlerContext):
    period = ctx.arguments["period"]
    stats = await ctx.store.get_usage_stats(ctx.caller, period)
    return Success(payload={"period_text": _PERIOD_TEXT[period], "usage": stats.model_dump(mode="json")})

# Admin Commands

async def admin_stats(ctx: HandlerContext):
    upstream, local = await asyncio.gather(
        ctx.api.get_analytics("30d", ("licenses", "users", "revenue")),
        ctx.store.get_bot_stats(),
        return_exceptions=True,
    )
    _raise_on_unhandled(upstream, local)

    unavailable = []
    if isinstance(upstream, BotError):
        logger.warning("Upstream statistics unavailable: %s", upstream.message)
        unavailable.append("upstream")
        upstream = None
    if isinstance(local, BotError):
        logger.warning("Local statistics unavailable: %s", local.message)
        unavailable.append("local")
        local = None

    if upstream is None and local is None:
        raise UpstreamError("Statistics are unavailable from both the licensing service and the local store")

    return Success(
        payload={
            "upstream": upstream,
            "local": local.model_dump(mode="json") if local else None,
            "unavailable": unavailable,
        },
        degraded=bool(unavailable),
    )

async def admin_users(ctx: HandlerContext):
    page, limit = ctx.arguments["page"], ctx.arguments["limit"]
    users = await ctx.api.list_users(page, limit)
    return Success(payload={"users": users["items"], "total": users["total"], "page": page})

async def admin_products(ctx: HandlerContext):
    return await product_list(ctx)

async def admin_webhooks(ctx: HandlerContext):
    webhooks = await ctx.api.list_webhooks()
    return Success(payload={"webhooks": webhooks["items"], "total": webhooks["total"]})

async def admin_health(ctx: HandlerContext):
    health, ping, store_ok = await asyncio.gather(
        ctx.api.health_check(),
        _supplementary(ctx.api.ping(), "upstream ping"),
        _supplementary(ctx.store.ping(), "store ping"),
        return_exceptions=True,
    )
    _raise_on_unhandled(health, ping, store_ok)
    if isinstance(health, BotError):
        raise health

    return Success(
        payload={"api": health, "ping": ping, "store": "ok" if store_ok else "unavailable"},
        degraded=not store_ok or ping is None,
    )

# Help

async def show_help(ctx: HandlerContext):
    wanted = ctx.arguments["command"]
    entries = []
    for descriptor in ctx.commands.values():
        if wanted and descriptor.name != wanted:
            continue
        required = descriptor.minimum_tier or AuthorizationTier.USER
        entries.append({
            "command": f"/{descriptor.qualified_name}",
            "description": descriptor.description,
            "tier": required.label,
            "available": ctx.tier >= required,
            "options": [
                {"name": spec.name, "type": spec.kind.value, "required": spec.required}
                for spec in descriptor.parameters
            ],
        })
    return Success(payload={"commands": entries, "tier": ctx.tier.label})

def _page(maximum: int = 100) -> ParameterSpec:
    return ParameterSpec("page", ParameterKind.INTEGER, minimum=1, maximum=maximum, default=1,
                         description="Page number")

def _limit() -> ParameterSpec:
    return ParameterSpec("limit", ParameterKind.INTEGER, minimum=1, maximum=50, default=10,
                         description="Items per page")

def _period() -> ParameterSpec:
    return ParameterSpec("period", ParameterKind.CHOICE, choices=PERIOD_CHOICES, default="30d",
                         description="Time period")

def build_command_table(settings=None, owner_matcher: Optional[OwnerMatcher] = None) -> CommandTable:
    """Build the fixed command table the dispatcher serves."""
    settings = settings or default_settings
    matcher = owner_matcher or OwnerMatcher(settings.owner_fields)

    key = ParameterSpec("key", ParameterKind.LICENSE_KEY, required=True, description="License key")
    admin = AuthorizationTier.ADMIN
    descriptors = [
        CommandDescriptor("license", license_validate, "validate", "Validate a license key", parameters=(key,)),
        CommandDescriptor("license", license_info, "info", "Get license information", parameters=(key,)),
        CommandDescriptor("license", partial(license_list, matcher=matcher), "list", "List your licenses",
                          parameters=(_page(),)),
        CommandDescriptor("license", license_create, "create", "Create a new license", admin, (
            ParameterSpec("plan", ParameterKind.CHOICE, required=True, choices=PLAN_CHOICES),
            ParameterSpec("user", ParameterKind.IDENTITY, description="Owner, defaults to you"),
            ParameterSpec("email", ParameterKind.EMAIL),
            ParameterSpec("app", ParameterKind.IDENTITY, description="Application id"),
        )),
        CommandDescriptor("license", license_update, "update", "Update a license", admin, (
            ParameterSpec("id", ParameterKind.IDENTITY, required=True),
            ParameterSpec("status", ParameterKind.CHOICE, choices=tuple(
                status.value for status in LicenseStatus if status is not LicenseStatus.UNKNOWN
            )),
            ParameterSpec("plan", ParameterKind.CHOICE, choices=PLAN_CHOICES),
        )),
        CommandDescriptor("license", license_revoke, "revoke", "Revoke a license", admin, (
            ParameterSpec("id", ParameterKind.IDENTITY, required=True),
        )),
        CommandDescriptor("user", user_create, "create", "Create a new user", admin, (
            ParameterSpec("email", ParameterKind.EMAIL, required=True),
            ParameterSpec("name", max_length=100),
        )),
        CommandDescriptor("user", user_info, "info", "Get user information", parameters=(
            ParameterSpec("user", ParameterKind.IDENTITY, description="Defaults to you",
                          minimum_tier=admin),
        )),
        CommandDescriptor("user", user_update, "update", "Update your profile", parameters=(
            ParameterSpec("email", ParameterKind.EMAIL),
            ParameterSpec("name", max_length=100),
        )),
        CommandDescriptor("product", product_create, "create", "Create a new product", admin, (
            ParameterSpec("name", required=True, max_length=100),
            ParameterSpec("price", ParameterKind.INTEGER, minimum=0, maximum=100000, default=0),
            ParameterSpec("currency", ParameterKind.CHOICE, choices=CURRENCY_CHOICES, default="USD"),
        )),
        CommandDescriptor("product", product_info, "info", "Get product information", parameters=(
            ParameterSpec("id", ParameterKind.IDENTITY, required=True),
        )),
        CommandDescriptor("product", product_list, "list", "List products", parameters=(_page(), _limit())),
        CommandDescriptor("analytics", analytics_overview, "overview", "Analytics overview", admin, (_period(),)),
        CommandDescriptor("analytics", analytics_license, "license", "Analytics for one license",
                          parameters=(key, _period())),
        CommandDescriptor("analytics", analytics_usage, "usage", "Your usage statistics", parameters=(_period(),)),
        CommandDescriptor("admin", admin_stats, "stats", "Bot and licensing statistics", admin),
        CommandDescriptor("admin", admin_users, "users", "List users", admin, (_page(), _limit())),
        CommandDescriptor("admin", admin_products, "products", "List products", admin, (_page(), _limit())),
        CommandDescriptor("admin", admin_webhooks, "webhooks", "List webhooks", admin),
        CommandDescriptor("admin", admin_health, "health", "Check API health", admin),
    ]
    names = tuple(dict.fromkeys(descriptor.name for descriptor in descriptors)) + ("help",)
    descriptors.append(CommandDescriptor("help", show_help, None, "Show available commands", parameters=(
        ParameterSpec("command", ParameterKind.CHOICE, choices=names),
    )))
    return CommandTable(descriptors)
