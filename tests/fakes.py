from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import httpx

from models import CommandInvocation, Success


class FakeUpstream:
    """Route table for httpx.MockTransport that remembers every request."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Tuple[int, Any, Optional[Exception]]] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, status: int = 200, json: Any = None, error: Optional[Exception] = None):
        self.routes[(method, path)] = (status, json, error)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body, error = self.routes.get(
            (request.method, request.url.path), (404, {"message": "Not found"}, None)
        )
        if error is not None:
            raise error
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def paths(self) -> List[str]:
        return [f"{request.method} {request.url.path}" for request in self.requests]


class CountingFake:
    """Stand-in collaborator: every awaited method call is recorded."""

    def __init__(self, **results: Any) -> None:
        self.calls: List[str] = []
        self._results = results

    def __getattr__(self, name: str):
        async def call(*args, **kwargs):
            self.calls.append(name)
            result = self._results.get(name)
            if isinstance(result, BaseException):
                raise result
            return result

        return call


def recording_handler(result=None, error: Optional[BaseException] = None):
    async def handler(ctx):
        handler.contexts.append(ctx)
        if error is not None:
            raise error
        return result if result is not None else Success(payload={"ok": True})

    handler.contexts = []
    return handler


def invoke(command: str, subcommand: Optional[str] = None, /, caller: str = "2", roles=(), **arguments) -> CommandInvocation:
    return CommandInvocation(
        name=command,
        subcommand=subcommand,
        arguments=arguments,
        caller_identity=caller,
        caller_roles=frozenset(roles),
    )
