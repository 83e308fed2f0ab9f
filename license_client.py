import asyncio
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar
from urllib.parse import quote

import httpx

from config import settings as default_settings
from errors import UpstreamError
from models import LicenseRecord, LicenseStatus, NotSupported, ValidationOutcome
from validators import sanitize_for_display

logger = logging.getLogger(__name__)

T = TypeVar("T")

SIGNATURE_PREFIX = "sha256="
MAX_RETRY_ATTEMPTS = 5
DEFAULT_HARDWARE_ID = "discord-bot"

_ACTIVE_STATUSES = {"active", "valid"}
_EXPIRED_STATUSES = {"expired"}
_REVOKED_STATUSES = {"revoked", "suspended", "disabled", "banned"}

def _first(raw: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None

def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (TypeError, ValueError, OverflowError, OSError):
        logger.debug("Ignoring unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

def _normalize_status(raw_status: Any, expires_at: Optional[datetime]) -> LicenseStatus:
    status = str(raw_status or "").strip().lower()
    expired = expires_at is not None and expires_at < datetime.now(timezone.utc)

    if status in _REVOKED_STATUSES:
        return LicenseStatus.REVOKED
    if status in _EXPIRED_STATUSES:
        return LicenseStatus.EXPIRED
    if status in _ACTIVE_STATUSES:
        return LicenseStatus.EXPIRED if expired else LicenseStatus.ACTIVE
    if not status and expired:
        return LicenseStatus.EXPIRED
    return LicenseStatus.UNKNOWN

def normalize_license(raw: Any, owner_fields: Iterable[str] = ()) -> LicenseRecord:
    """
    Map one upstream license object onto the canonical LicenseRecord.

    The licensing API has shipped several shapes over time (``key`` vs
    ``licenseKey``, ``plan`` as a string or an object, ...); all of that is
    absorbed here.
    """
    if not isinstance(raw, dict):
        raise UpstreamError("Unexpected license payload from licensing service")

    key = _first(raw, "key", "licenseKey", "license_key", "id")
    if key is None:
        raise UpstreamError("License payload from licensing service has no key")

    plan = raw.get("plan")
    if isinstance(plan, dict):
        plan = plan.get("name")
    plan = plan or _first(raw, "planName", "plan_name")

    app = raw.get("application") or raw.get("app")
    application_name = _first(raw, "applicationName", "appName")
    if application_name is None and isinstance(app, dict):
        application_name = app.get("name")

    expires_at = _parse_datetime(_first(raw, "expiresAt", "expires_at"))
    owner = _first(raw, "issuedTo", "issuedEmail", "email", "userId")
    features = raw.get("features") or []

    return LicenseRecord(
        key=str(key),
        id=str(raw["id"]) if raw.get("id") is not None else None,
        status=_normalize_status(raw.get("status"), expires_at),
        plan_name=str(plan) if plan else None,
        expires_at=expires_at,
        owning_identity=str(owner) if owner is not None else None,
        application_name=application_name,
        features=[str(feature) for feature in features] if isinstance(features, list) else [],
        owner_fields={
            name: str(raw[name]) for name in owner_fields if raw.get(name) not in (None, "")
        },
    )

def normalize_validation(license_key: str, raw: Any) -> ValidationOutcome:
    if not isinstance(raw, dict):
        raise UpstreamError("Unexpected validation payload from licensing service")

    license_data = raw.get("license") if isinstance(raw.get("license"), dict) else {}
    valid = _first(raw, "valid", "isValid")
    features = raw.get("features") or license_data.get("features") or []

    return ValidationOutcome(
        key=license_key,
        valid=bool(valid),
        message=_first(raw, "message", "reason"),
        license_id=_first(raw, "licenseId") or _first(license_data, "id"),
        expires_at=_parse_datetime(_first(raw, "expiresAt") or _first(license_data, "expiresAt", "expires_at")),
        features=[str(feature) for feature in features] if isinstance(features, list) else [],
    )

def normalize_page(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, list):
        return {"items": raw, "total": len(raw)}
    if isinstance(raw, dict):
        items = _first(raw, "data", "items", "results") or []
        if not isinstance(items, list):
            raise UpstreamError("Unexpected list payload from licensing service")
        return {"items": items, "total": raw.get("total", len(items))}
    return {"items": [], "total": 0}

def verify_webhook_signature(payload: Any, signature: Any, secret: Any) -> bool:
    """
    Check an inbound ``sha256=<hex>`` webhook signature against the raw body.
    """
    try:
        if not isinstance(signature, str) or not signature.startswith(SIGNATURE_PREFIX):
            return False
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        expected = hmac.new(secret, payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature[len(SIGNATURE_PREFIX):], expected)
    except (TypeError, ValueError):
        return False

async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (UpstreamError,),
) -> T:
    """
    Run an idempotent async operation, retrying with exponential delay.

    Attempts are capped at MAX_RETRY_ATTEMPTS whatever the caller asks for.
    Client errors (a 4xx ``status_code``) fail on the first attempt.
    """
    attempts = max(1, min(max_attempts, MAX_RETRY_ATTEMPTS))
    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as e:
            status_code = getattr(e, "status_code", None)
            if attempt >= attempts or (status_code is not None and 400 <= status_code < 500):
                raise
            delay = initial_delay * 2 ** (attempt - 1)
            logger.warning("Attempt %d/%d failed (%s); retrying in %.1fs", attempt, attempts, e, delay)
            await asyncio.sleep(delay)
            attempt += 1

class LicenseClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client_identifier: Optional[str] = None,
        owner_fields: Optional[Iterable[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings=None,
    ):
        settings = settings or default_settings
        self.api_key = api_key if api_key is not None else settings.LICENSE_API_KEY
        self.base_url = (base_url or settings.LICENSE_API_URL).rstrip("/")
        self.timeout = timeout or settings.LICENSE_API_TIMEOUT
        self.client_identifier = client_identifier or settings.CLIENT_IDENTIFIER
        self.owner_fields = list(owner_fields if owner_fields is not None else settings.owner_fields)

        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "User-Agent": self.client_identifier,
            },
            event_hooks={"request": [self._log_request], "response": [self._log_response]},
        )

    async def _log_request(self, request: httpx.Request):
        logger.debug("Making request to %s %s", request.method, request.url)

    async def _log_response(self, response: httpx.Response):
        request = response.request
        if response.is_error:
            logger.warning("%s %s returned %s", request.method, request.url, response.status_code)
        else:
            logger.debug("%s %s returned %s", request.method, request.url, response.status_code)

    @staticmethod
    def _upstream_text(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            return str(body.get("message") or error or response.reason_phrase)
        return response.reason_phrase

    @classmethod
    def _error_message(cls, response: httpx.Response) -> str:
        # Upstream text ends up in chat embeds
        return sanitize_for_display(cls._upstream_text(response))

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            response = await self._http.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise UpstreamError(f"{action} failed: {e}") from e

        if not response.is_success:
            raise UpstreamError(
                f"{action} failed: {self._error_message(response)}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"{action} failed: invalid JSON response", status_code=response.status_code) from e

        # Some endpoints wrap payloads as {"success": bool, "data": ...}
        if isinstance(data, dict) and "success" in data:
            if not data["success"]:
                error = data.get("error")
                message = error.get("message") if isinstance(error, dict) else error
                raise UpstreamError(f"{action} failed: {message or 'request rejected'}", status_code=response.status_code)
            return data.get("data")
        return data

    async def validate_license(self, license_key: str, hardware_id: Optional[str] = None) -> ValidationOutcome:
        data = await self._request(
            "POST",
            "/v1/licenses/verify",
            "License validation",
            json={"key": license_key, "hardwareId": hardware_id or DEFAULT_HARDWARE_ID},
        )
        return normalize_validation(license_key, data or {})

    async def get_license(self, license_key: str) -> LicenseRecord:
        data = await self._request("GET", f"/v1/licenses/{quote(license_key, safe='')}", "License lookup")
        return normalize_license(data, self.owner_fields)

    async def create_license(self, app_id: str, data: Dict[str, Any]) -> LicenseRecord:
        created = await self._request(
            "POST", f"/v1/apps/{quote(app_id, safe='')}/licenses", "License creation", json=data
        )
        return normalize_license(created, self.owner_fields)

    async def update_license(self, license_id: str, patch: Dict[str, Any]) -> LicenseRecord:
        updated = await self._request(
            "PATCH", f"/v1/licenses/{quote(license_id, safe='')}", "License update", json=patch
        )
        return normalize_license(updated, self.owner_fields)

    async def revoke_license(self, license_id: str) -> Optional[LicenseRecord]:
        revoked = await self._request("DELETE", f"/v1/licenses/{quote(license_id, safe='')}", "License revocation")
        if isinstance(revoked, dict) and revoked:
            return normalize_license(revoked, self.owner_fields)
        return None

    async def list_licenses_for_app(self, app_id: str) -> List[LicenseRecord]:
        """
        Every license issued for an application.

        The licensing API has no "licenses by user" endpoint, so callers
        filter this collection themselves.
        """
        data = await self._request("GET", f"/v1/apps/{quote(app_id, safe='')}/licenses", "License listing")
        if isinstance(data, dict) and "licenses" in data:
            items = data["licenses"]
        else:
            items = normalize_page(data)["items"]
        if not isinstance(items, list):
            raise UpstreamError("Unexpected license listing payload from licensing service")
        return [normalize_license(item, self.owner_fields) for item in items]

    async def get_analytics(self, period: str = "30d", metrics: Iterable[str] = ()) -> Dict[str, Any]:
        params = {"period": period}
        metrics = list(metrics)
        if metrics:
            params["metrics"] = ",".join(metrics)
        return await self._request("GET", "/v1/analytics", "Analytics lookup", params=params) or {}

    async def get_license_analytics(self, license_id: str, period: str = "30d") -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/v1/licenses/{quote(license_id, safe='')}/analytics",
            "License analytics lookup",
            params={"period": period},
        ) or {}

    async def get_user(self, user_id: str) -> NotSupported:
        return NotSupported(
            operation="get_user",
            reason="The licensing API does not expose user lookups; use the local profile",
        )

    async def create_user(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/users", "User creation", json=data) or {}

    async def update_user(self, user_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("PATCH", f"/v1/users/{quote(user_id, safe='')}", "User update", json=patch) or {}

    async def list_users(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        data = await self._request("GET", "/v1/users", "User listing", params={"page": page, "limit": limit})
        return normalize_page(data)

    async def create_product(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/v1/apps", "Product creation", json=data) or {}

    async def get_product(self, app_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/apps/{quote(app_id, safe='')}", "Product lookup") or {}

    async def list_products(self, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        data = await self._request("GET", "/v1/apps", "Product listing", params={"page": page, "limit": limit})
        return normalize_page(data)

    async def list_webhooks(self) -> Dict[str, Any]:
        data = await self._request("GET", "/v1/webhooks", "Webhook listing")
        return normalize_page(data)

    async def ping(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/ping", "Ping") or {}

    async def health_check(self) -> Dict[str, Any]:
        data = await self._request("GET", "/health", "Health check")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected health payload from licensing service")
        return {
            "status": data.get("status", "unknown"),
            "version": data.get("version"),
            "timestamp": data.get("timestamp"),
        }

    async def close(self):
        await self._http.aclose()
