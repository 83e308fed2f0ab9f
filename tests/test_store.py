import asyncio
from datetime import timedelta

import pytest

from conftest import OTHER_KEY, VALID_KEY
from database import CachedLicense, utcnow
from errors import StoreUnavailable
from models import LicenseRecord, LicenseStatus


def _record(key, **kwargs):
    return LicenseRecord(key=key, id=kwargs.pop("id", f"lic_{key[:4]}"), status=LicenseStatus.ACTIVE, **kwargs)


@pytest.mark.asyncio
async def test_get_or_create_user_is_idempotent(store):
    first = await store.get_or_create_user("42", "alice")
    second = await store.get_or_create_user("42")

    assert first.identity == second.identity == "42"
    assert second.username == "alice"
    assert (await store.get_bot_stats()).total_users == 1


@pytest.mark.asyncio
async def test_update_user_creates_and_edits_profile(store):
    profile = await store.update_user("42", email="alice@example.com")
    assert profile.email == "alice@example.com"

    profile = await store.update_user("42", username="alice")
    assert (profile.username, profile.email) == ("alice", "alice@example.com")
    assert (await store.get_user("42")).username == "alice"
    assert await store.get_user("missing") is None


@pytest.mark.asyncio
async def test_user_licenses_newest_first(store):
    await store.save_license("42", _record(VALID_KEY, plan_name="monthly"))
    await store.save_license("42", _record(OTHER_KEY, plan_name="yearly"))

    licenses = await store.get_user_licenses("42")

    assert [record.key for record in licenses] == [OTHER_KEY, VALID_KEY]
    assert all(record.owning_identity == "42" for record in licenses)
    assert await store.get_user_licenses("nobody") == []


@pytest.mark.asyncio
async def test_save_license_refreshes_existing_row(store):
    await store.save_license("42", _record(VALID_KEY, plan_name="monthly"))
    await store.save_license("43", _record(VALID_KEY, plan_name="yearly", features=["sso"]))

    cached = await store.get_license(VALID_KEY)

    assert cached.owning_identity == "43"
    assert cached.plan_name == "yearly"
    assert cached.features == ["sso"]
    assert (await store.get_bot_stats()).total_licenses == 1


@pytest.mark.asyncio
async def test_update_license_status(store):
    await store.save_license("42", _record(VALID_KEY))

    assert await store.update_license_status(VALID_KEY, LicenseStatus.REVOKED) is True
    assert (await store.get_license(VALID_KEY)).status is LicenseStatus.REVOKED
    assert await store.update_license_status(OTHER_KEY, LicenseStatus.REVOKED) is False


@pytest.mark.asyncio
async def test_orphan_license_rows_are_rejected(store):
    def insert_orphan(db):
        db.add(CachedLicense(user_id=999, license_key=VALID_KEY))
        db.flush()

    with pytest.raises(StoreUnavailable):
        await store._run("insert_orphan", insert_orphan)
    assert await store.get_license(VALID_KEY) is None


@pytest.mark.asyncio
async def test_usage_stats(store):
    await store.log_validation("42", VALID_KEY, True)
    await store.log_validation("42", VALID_KEY, True)
    await store.log_validation("42", OTHER_KEY, False)
    await store.log_validation("43", OTHER_KEY, True)

    stats = await store.get_usage_stats("42", "7d")

    assert stats.total_validations == 3
    assert stats.successful_validations == 2
    assert stats.failed_validations == 1
    assert stats.active_licenses == 2
    assert stats.most_used_license == VALID_KEY
    assert stats.average_daily == round(3 / 7, 2)
    assert stats.peak_day == utcnow().date().isoformat()
    assert [(usage.license_key, usage.validations) for usage in stats.license_breakdown] == [
        (VALID_KEY, 2),
        (OTHER_KEY, 1),
    ]


@pytest.mark.asyncio
async def test_usage_stats_for_unknown_caller_are_empty(store):
    stats = await store.get_usage_stats("nobody", "90d")

    assert stats.period == "90d"
    assert stats.total_validations == 0
    assert stats.most_used_license is None
    assert stats.license_breakdown == []


@pytest.mark.asyncio
async def test_validation_counts(store):
    entry = await store.log_validation("42", VALID_KEY, True)
    await store.log_validation("43", VALID_KEY, False)

    assert entry.caller_identity == "42"
    assert entry.succeeded is True
    assert await store.get_validation_count("42") == 1
    assert await store.get_validation_count() == 2
    assert await store.get_validation_count(since=utcnow() + timedelta(minutes=1)) == 0


@pytest.mark.asyncio
async def test_concurrent_validation_logs_are_all_recorded(store):
    await asyncio.gather(*(store.log_validation("42", VALID_KEY, i % 2 == 0) for i in range(20)))

    assert await store.get_validation_count("42") == 20
    assert (await store.get_bot_stats()).total_users == 1


@pytest.mark.asyncio
async def test_command_log_and_ping(store):
    await store.log_command("42", "license validate")

    assert (await store.get_bot_stats()).total_commands == 1
    assert await store.ping() is True


@pytest.mark.asyncio
async def test_closed_store_is_unavailable(store):
    await store.close()

    with pytest.raises(StoreUnavailable):
        await store.get_bot_stats()
