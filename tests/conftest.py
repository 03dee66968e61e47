"""
Global pytest configuration and fixtures for loadbench tests.

This module provides:
- A fresh metric recorder per test
- Small option builders with millisecond-scale stages
- A scripted in-memory contact API (httpx.MockTransport)
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from loadbench.core.metrics_collector import MetricsCollector
from loadbench.models import LoadTestOptions


@pytest.fixture
def recorder() -> MetricsCollector:
    collector = MetricsCollector()
    collector.start()
    return collector


@pytest.fixture
def make_options() -> Callable[..., LoadTestOptions]:
    """Build LoadTestOptions from keyword arguments (k6-style keys allowed)."""

    def _make(**kwargs: Any) -> LoadTestOptions:
        kwargs.setdefault("name", "unit")
        kwargs.setdefault("graceful_stop_ms", 1000)
        return LoadTestOptions.model_validate(kwargs)

    return _make


class FakeContactApi:
    """
    Minimal contact API used through ``httpx.MockTransport``.

    Registers users, issues tokens and stores contacts in memory. Individual
    endpoints can be forced to fail with ``fail[path] = status``.
    """

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, str]] = {}
        self.tokens: Dict[str, str] = {}
        self.contacts: List[Dict[str, Any]] = []
        self.calls: List[str] = []
        self.fail: Dict[str, int] = {}

    def _json(self, status: int, body: Any) -> httpx.Response:
        return httpx.Response(status, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(f"{request.method} {path}")
        if path in self.fail:
            return self._json(self.fail[path], {"errors": "forced failure"})

        if request.method == "GET" and path == "/ping":
            return self._json(200, {"data": "pong"})

        if request.method == "POST" and path == "/api/users":
            body = json.loads(request.content)
            if body["username"] in self.users:
                return self._json(400, {"errors": "Username already exists"})
            self.users[body["username"]] = body
            return self._json(200, {"data": {"username": body["username"], "name": body["name"]}})

        if request.method == "POST" and path == "/api/users/login":
            body = json.loads(request.content)
            user = self.users.get(body["username"])
            if user is None or user["password"] != body["password"]:
                return self._json(401, {"errors": "Username or password wrong"})
            token = f"token-{body['username']}"
            self.tokens[token] = body["username"]
            return self._json(200, {"data": {"token": token}})

        username = self.tokens.get(request.headers.get("Authorization", ""))
        if username is None:
            return self._json(401, {"errors": "Unauthorized"})

        if request.method == "GET" and path in ("/api/users/current", "/api/users/me"):
            user = self.users[username]
            return self._json(200, {"data": {"username": username, "name": user["name"]}})

        if request.method == "POST" and path == "/api/contacts":
            body = json.loads(request.content)
            contact = {"id": len(self.contacts) + 1, **body}
            self.contacts.append(contact)
            return self._json(200, {"data": contact})

        return self._json(404, {"errors": "Not found"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def contact_api() -> FakeContactApi:
    return FakeContactApi()
