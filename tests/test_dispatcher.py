import logging

import pytest

from commands import build_command_table
from conftest import VALID_KEY
from dispatcher import (
    GENERIC_ERROR_MESSAGE,
    CommandDescriptor,
    CommandTable,
    Dispatcher,
    InvocationState,
    ParameterKind,
    ParameterSpec,
    validate_arguments,
)
from errors import ErrorKind, InvalidFormat, OutOfRange, StoreUnavailable, UpstreamError
from fakes import CountingFake, invoke, recording_handler
from models import AuthorizationTier, Failure, Success
from permissions import PermissionResolver

KEY_PARAM = ParameterSpec("key", ParameterKind.LICENSE_KEY, required=True)
PAGE_PARAM = ParameterSpec("page", ParameterKind.INTEGER, minimum=1, maximum=10, default=1)


def make_dispatcher(*descriptors, api=None, store=None, settings=None):
    return Dispatcher(
        CommandTable(descriptors),
        api if api is not None else CountingFake(),
        store if store is not None else CountingFake(),
        PermissionResolver(owner_id="1000", admin_role_ids={"role-admin"}),
        settings,
    )


@pytest.mark.asyncio
async def test_unknown_command_touches_nothing():
    handler = recording_handler()
    api, store = CountingFake(), CountingFake()
    dispatcher = make_dispatcher(CommandDescriptor("license", handler, "validate"), api=api, store=store)

    for invocation in (invoke("frobnicate"), invoke("license", "explode")):
        response = await dispatcher.dispatch(invocation)
        assert response.ok is False
        assert response.kind == ErrorKind.UNKNOWN_COMMAND
        assert response.ephemeral is True
        assert response.edit_existing is False

    assert handler.contexts == []
    assert api.calls == [] and store.calls == []


@pytest.mark.asyncio
async def test_permission_denied_before_any_io():
    handler = recording_handler()
    api, store = CountingFake(), CountingFake()
    dispatcher = make_dispatcher(
        CommandDescriptor("admin", handler, "stats", minimum_tier=AuthorizationTier.ADMIN), api=api, store=store
    )

    response = await dispatcher.dispatch(invoke("admin", "stats", roles=["role-member"]))

    assert response.kind == ErrorKind.PERMISSION_DENIED
    assert response.details == {"required": "admin", "actual": "user"}
    assert handler.contexts == []
    assert api.calls == [] and store.calls == []


@pytest.mark.asyncio
async def test_real_admin_commands_deny_users_before_io(settings):
    api, store = CountingFake(), CountingFake()
    dispatcher = Dispatcher(build_command_table(settings), api, store, PermissionResolver.from_settings(settings))

    for subcommand in ("stats", "users", "products", "webhooks", "health"):
        response = await dispatcher.dispatch(invoke("admin", subcommand))
        assert response.kind == ErrorKind.PERMISSION_DENIED

    assert api.calls == [] and store.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("caller,roles", [("1000", ()), ("2", ("role-admin",))])
async def test_admins_and_owner_pass_the_gate(caller, roles):
    handler = recording_handler()
    dispatcher = make_dispatcher(CommandDescriptor("admin", handler, "stats", minimum_tier=AuthorizationTier.ADMIN))

    response = await dispatcher.dispatch(invoke("admin", "stats", caller=caller, roles=roles))

    assert response.ok is True
    assert handler.contexts[0].tier >= AuthorizationTier.ADMIN


@pytest.mark.asyncio
async def test_invalid_arguments_fail_before_io():
    handler = recording_handler()
    api, store = CountingFake(), CountingFake()
    dispatcher = make_dispatcher(
        CommandDescriptor("license", handler, "validate", parameters=(KEY_PARAM,)), api=api, store=store
    )

    for arguments in ({"key": "short"}, {}, {"key": VALID_KEY, "extra": 1}):
        response = await dispatcher.dispatch(invoke("license", "validate", **arguments))
        assert response.kind == ErrorKind.VALIDATION_ERROR

    response = await dispatcher.dispatch(invoke("license", "validate", key="short"))
    assert response.message.startswith("Option 'key': ")
    assert handler.contexts == []
    assert api.calls == [] and store.calls == []


@pytest.mark.asyncio
async def test_success_is_rendered_and_recorded():
    handler = recording_handler(Success(payload={"answer": 42}))
    store = CountingFake()
    dispatcher = make_dispatcher(
        CommandDescriptor("license", handler, "list", parameters=(PAGE_PARAM,)), store=store
    )

    response = await dispatcher.dispatch(invoke("license", "list"))

    assert response.ok is True
    assert response.title == "/license list"
    assert response.payload == {"answer": 42}
    assert response.edit_existing is True
    assert response.ephemeral is False
    assert handler.contexts[0].arguments == {"page": 1}
    assert handler.contexts[0].state.deferred is True
    assert store.calls == ["log_command"]


@pytest.mark.asyncio
async def test_handler_failure_result_is_rendered():
    handler = recording_handler(Failure(kind=ErrorKind.UPSTREAM_ERROR, message="nope"))
    dispatcher = make_dispatcher(CommandDescriptor("help", handler))

    response = await dispatcher.dispatch(invoke("help"))

    assert (response.ok, response.kind, response.message) == (False, ErrorKind.UPSTREAM_ERROR, "nope")
    assert response.ephemeral is True


@pytest.mark.asyncio
async def test_bot_errors_keep_their_kind():
    dispatcher = make_dispatcher(
        CommandDescriptor("license", recording_handler(error=UpstreamError("service down", 503)), "info"),
    )

    response = await dispatcher.dispatch(invoke("license", "info"))

    assert response.kind == ErrorKind.UPSTREAM_ERROR
    assert response.message == "service down"
    assert response.details == {"statusCode": 503}


@pytest.mark.asyncio
async def test_unexpected_exception_is_generic(caplog):
    dispatcher = make_dispatcher(
        CommandDescriptor("help", recording_handler(error=RuntimeError("secret internals"))),
    )

    with caplog.at_level(logging.ERROR, logger="dispatcher"):
        response = await dispatcher.dispatch(invoke("help"))

    assert response.kind == ErrorKind.INTERNAL_ERROR
    assert response.message == GENERIC_ERROR_MESSAGE
    assert "secret internals" not in response.model_dump_json()
    assert "secret internals" in caplog.text


@pytest.mark.asyncio
async def test_non_result_return_is_internal_error():
    async def sloppy(ctx):
        return {"not": "a result"}

    response = await make_dispatcher(CommandDescriptor("help", sloppy)).dispatch(invoke("help"))

    assert response.kind == ErrorKind.INTERNAL_ERROR


@pytest.mark.asyncio
async def test_command_log_failure_does_not_change_result():
    store = CountingFake(log_command=StoreUnavailable("disk full"))
    dispatcher = make_dispatcher(CommandDescriptor("help", recording_handler()), store=store)

    response = await dispatcher.dispatch(invoke("help"))

    assert response.ok is True
    assert store.calls == ["log_command"]


def test_duplicate_registration_rejected():
    handler = recording_handler()
    with pytest.raises(ValueError):
        CommandTable([CommandDescriptor("help", handler), CommandDescriptor("help", handler)])


def test_command_table_is_read_only():
    table = CommandTable([CommandDescriptor("license", recording_handler(), "validate")])

    with pytest.raises(TypeError):
        table[("help", None)] = CommandDescriptor("help", recording_handler())
    assert table.lookup("license", "validate").qualified_name == "license validate"
    assert table.lookup("license") is None
    assert table.names == ("license",)


def test_real_command_table_registers_every_group(settings):
    table = build_command_table(settings)

    assert table.names == ("license", "user", "product", "analytics", "admin", "help")
    assert table.lookup("license", "create").minimum_tier is AuthorizationTier.ADMIN
    assert table.lookup("license", "validate").minimum_tier is None


def test_validate_arguments_errors_keep_their_class():
    with pytest.raises(OutOfRange):
        validate_arguments((PAGE_PARAM,), {"page": 11})
    with pytest.raises(InvalidFormat):
        validate_arguments((PAGE_PARAM,), {"page": "two"})
    assert validate_arguments((PAGE_PARAM,), {"page": ""}) == {"page": 1}


def test_string_parameter_bounds():
    spec = ParameterSpec("name", max_length=5)
    assert spec.parse("  abc ") == "abc"
    with pytest.raises(InvalidFormat):
        spec.parse("abcdef")
    with pytest.raises(InvalidFormat):
        spec.parse("   ")


def test_invocation_state_responds_once():
    state = InvocationState()
    assert state.mark_responded() is True
    assert state.mark_responded() is False


@pytest.mark.asyncio
async def test_gated_option_checked_before_io():
    handler = recording_handler()
    api, store = CountingFake(), CountingFake()
    target = ParameterSpec("user", ParameterKind.IDENTITY, minimum_tier=AuthorizationTier.ADMIN)
    dispatcher = make_dispatcher(CommandDescriptor("user", handler, "info", parameters=(target,)), api=api, store=store)

    denied = await dispatcher.dispatch(invoke("user", "info", user="3"))
    assert denied.kind == ErrorKind.PERMISSION_DENIED
    assert denied.details == {"required": "admin", "actual": "user"}
    assert handler.contexts == []
    assert api.calls == [] and store.calls == []

    for arguments in ({}, {"user": "2"}):
        response = await dispatcher.dispatch(invoke("user", "info", **arguments))
        assert response.ok is True

    response = await dispatcher.dispatch(invoke("user", "info", roles=["role-admin"], user="3"))
    assert response.ok is True
    assert handler.contexts[-1].arguments == {"user": "3"}
