"""
Contact API workloads.

User flows against the contact management API:

- ``POST /api/users``            register
- ``POST /api/users/login``      login (token in ``data.token``)
- ``GET  /api/users/current``    current user (falls back to ``/api/users/me``)
- ``POST /api/contacts``         create a contact (``Authorization: <token>``)
- ``GET  /ping``                 liveness

Every request records ``http_reqs``, ``http_req_duration`` and
``http_req_failed`` tagged with ``name``, ``method`` and ``status``. ``setup``
pre-creates users for the login-based flows and owns the shared
``httpx.AsyncClient``; ``teardown`` closes it.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional
from uuid import uuid4

import httpx

from loadbench.config import settings
from loadbench.core.workload import VirtualUser, WeightedWorkload
from loadbench.exceptions import WorkloadIterationError
from loadbench.models import MetricKind

logger = logging.getLogger(__name__)

# HTTP metrics
HTTP_REQS = "http_reqs"
HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"

# Workflow metrics
WORKFLOW_SUCCESS = "workflow_success"
WORKFLOW_ERRORS = "workflow_errors"
WORKFLOW_DURATION = "workflow_duration"
CONTACT_CREATION_SUCCESS = "contact_creation_success"

DEFAULT_PASSWORD = "loadtest123"
DEFAULT_USER_COUNT = 5

# Share of existing-user iterations that also create a contact.
EXISTING_USER_CONTACT_RATIO = 0.6
MOBILE_CONTACT_RATIO = 0.3

POWER_USER_PASSWORD = "power123"
POWER_USER_BULK = (3, 7)


@dataclass
class ContactsContext:
    """Setup context shared by every worker. Treat as read-only."""

    base_url: str
    client: httpx.AsyncClient
    users: List[Dict[str, str]] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    step_pause_seconds: float = 1.0


def make_client(
    base_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url or settings.TARGET_BASE_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        transport=transport,
        headers={"Accept": "application/json", "Content-Type": "application/json"},
    )


def unique_suffix() -> str:
    return f"{int(time.time() * 1000)}_{uuid4().hex[:9]}"


CONTACTS_METRICS = {
    HTTP_REQS: MetricKind.COUNTER,
    HTTP_REQ_DURATION: MetricKind.TREND,
    HTTP_REQ_FAILED: MetricKind.RATE,
    WORKFLOW_SUCCESS: MetricKind.RATE,
    WORKFLOW_ERRORS: MetricKind.COUNTER,
    WORKFLOW_DURATION: MetricKind.TREND,
    CONTACT_CREATION_SUCCESS: MetricKind.RATE,
}


def _context(vu: VirtualUser) -> ContactsContext:
    # Declared up front so count thresholds see zero rather than a missing metric.
    for name, kind in CONTACTS_METRICS.items():
        vu.metrics.declare(name, kind)
    if not isinstance(vu.data, ContactsContext):
        raise WorkloadIterationError(
            "contacts workloads need loadbench.workloads.contacts:setup as the setup hook"
        )
    return vu.data


def _status(expected: int) -> Callable[[Optional[httpx.Response]], bool]:
    return lambda r: r is not None and r.status_code == expected


def _has_body(r: Optional[httpx.Response]) -> bool:
    return r is not None and len(r.content) > 0


def _data(r: Optional[httpx.Response]) -> Optional[Dict[str, Any]]:
    if r is None:
        return None
    try:
        body = r.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    return data if isinstance(data, dict) else None


def _token(r: Optional[httpx.Response]) -> Optional[str]:
    data = _data(r)
    token = data.get("token") if data else None
    return str(token) if token else None


def _check(
    vu: Optional[VirtualUser],
    r: Optional[httpx.Response],
    checks: Mapping[str, Callable[[Optional[httpx.Response]], Any]],
) -> bool:
    if vu is not None:
        return vu.check(r, checks)
    return all(bool(predicate(r)) for predicate in checks.values())


async def _request(
    vu: Optional[VirtualUser],
    ctx: ContactsContext,
    method: str,
    path: str,
    name: str,
    token: Optional[str] = None,
    **kwargs: Any,
) -> Optional[httpx.Response]:
    """
    Send one request and record its HTTP metrics.

    Transport errors are recorded as failed requests with status ``0`` and
    return None.
    """
    headers = {"Authorization": token} if token else None
    status = 0
    started = time.perf_counter()
    try:
        response = await ctx.client.request(method, path, headers=headers, **kwargs)
        status = response.status_code
        return response
    except httpx.HTTPError as e:
        logger.debug("%s %s failed: %s", method, path, e)
        return None
    finally:
        if vu is not None:
            duration_ms = (time.perf_counter() - started) * 1000.0
            tags = vu.tagged({"name": name, "method": method, "status": str(status)})
            vu.metrics.add_counter(HTTP_REQS, 1, tags)
            vu.metrics.add_trend(HTTP_REQ_DURATION, duration_ms, tags)
            vu.metrics.add_rate(HTTP_REQ_FAILED, not 200 <= status < 400, tags)


async def register_user(
    vu: Optional[VirtualUser], ctx: ContactsContext, user: Mapping[str, str]
) -> Optional[httpx.Response]:
    response = await _request(vu, ctx, "POST", "/api/users", "register", json=dict(user))
    _check(
        vu,
        response,
        {
            "register status is 200": _status(200),
            "register response not empty": _has_body,
        },
    )
    if response is not None and response.status_code != 200:
        logger.debug(
            "Registration error - status: %s, body: %s",
            response.status_code,
            response.text,
        )
    return response


async def login_user(
    vu: Optional[VirtualUser], ctx: ContactsContext, username: str, password: str
) -> Optional[str]:
    """Log in and return the token, or None."""
    response = await _request(
        vu,
        ctx,
        "POST",
        "/api/users/login",
        "login",
        json={"username": username, "password": password},
    )
    _check(
        vu,
        response,
        {
            "login status is 200": _status(200),
            "login token received": lambda r: _token(r) is not None,
        },
    )
    return _token(response)


async def get_current_user(
    vu: Optional[VirtualUser], ctx: ContactsContext, token: str
) -> Optional[httpx.Response]:
    response = await _request(vu, ctx, "GET", "/api/users/current", "get_user", token=token)
    if response is None or response.status_code != 200:
        response = await _request(vu, ctx, "GET", "/api/users/me", "get_user_me", token=token)
    _check(
        vu,
        response,
        {
            "get user status is 200": _status(200),
            "get user response not empty": _has_body,
        },
    )
    return response


async def create_contact(
    vu: Optional[VirtualUser],
    ctx: ContactsContext,
    token: str,
    contact: Mapping[str, str],
) -> bool:
    response = await _request(
        vu, ctx, "POST", "/api/contacts", "create_contact", token=token, json=dict(contact)
    )
    ok = _check(
        vu,
        response,
        {
            "create contact status is 200": _status(200),
            "create contact contains contact data": lambda r: bool(
                (_data(r) or {}).get("first_name")
            ),
        },
    )
    if vu is not None:
        vu.metrics.add_rate(CONTACT_CREATION_SUCCESS, ok, vu.tags)
    return ok


async def ping(vu: Optional[VirtualUser], ctx: ContactsContext) -> Optional[httpx.Response]:
    response = await _request(vu, ctx, "GET", "/ping", "ping")
    _check(vu, response, {"ping status is 200": _status(200)})
    return response


# =============================================================================
# Workflows
# =============================================================================


def _finish(vu: VirtualUser, started: float, ok: bool, reason: str = "") -> None:
    vu.metrics.add_trend(WORKFLOW_DURATION, (time.perf_counter() - started) * 1000.0, vu.tags)
    vu.metrics.add_rate(WORKFLOW_SUCCESS, ok, vu.tags)
    if not ok:
        vu.metrics.add_counter(WORKFLOW_ERRORS, 1, vu.tags)
        raise WorkloadIterationError(reason)


def _pick_user(ctx: ContactsContext) -> Optional[Dict[str, str]]:
    if not ctx.users:
        return None
    return random.choice(ctx.users)


async def new_user_workflow(vu: VirtualUser) -> None:
    """Register a fresh user, log in and add one to three contacts."""
    ctx = _context(vu)
    started = time.perf_counter()
    suffix = unique_suffix()
    user = {
        "username": f"loadtest_{suffix}",
        "password": DEFAULT_PASSWORD,
        "name": f"Load Test User {suffix}",
    }

    response = await register_user(vu, ctx, user)
    if response is None or response.status_code != 200:
        _finish(vu, started, False, "registration failed")
    await vu.sleep(ctx.step_pause_seconds)

    token = await login_user(vu, ctx, user["username"], user["password"])
    if token is None:
        _finish(vu, started, False, "login failed")
    await vu.sleep(ctx.step_pause_seconds)

    failures = 0
    for i in range(random.randint(1, 3)):
        contact = {
            "first_name": f"Contact{i}",
            "last_name": f"User{suffix}",
            "email": f"contact{i}.{suffix}@example.com",
            "phone": f"08123456789{i}",
        }
        if not await create_contact(vu, ctx, token, contact):
            failures += 1
        await vu.sleep(ctx.step_pause_seconds / 2)

    _finish(vu, started, failures == 0, f"{failures} contact(s) not created")


async def existing_user_workflow(vu: VirtualUser) -> None:
    """Log in a pre-created user; most of the time also add a contact."""
    ctx = _context(vu)
    user = _pick_user(ctx)
    if user is None:
        logger.debug("No pre-created users available, skipping")
        await vu.sleep(ctx.step_pause_seconds)
        return
    started = time.perf_counter()

    token = await login_user(vu, ctx, user["username"], user["password"])
    if token is None:
        _finish(vu, started, False, "login failed")
    await vu.sleep(ctx.step_pause_seconds)

    ok = True
    if random.random() < EXISTING_USER_CONTACT_RATIO:
        contact = {
            "first_name": "Regular",
            "last_name": "Contact",
            "email": f"regular.{unique_suffix()}@example.com",
            "phone": "081234567890",
        }
        ok = await create_contact(vu, ctx, token, contact)
    _finish(vu, started, ok, "contact not created")


async def browsing_workflow(vu: VirtualUser) -> None:
    """Log in a pre-created user and read the current user (read-only)."""
    ctx = _context(vu)
    user = _pick_user(ctx)
    if user is None:
        logger.debug("No pre-created users available for browsing, skipping")
        await vu.sleep(ctx.step_pause_seconds)
        return
    started = time.perf_counter()

    token = await login_user(vu, ctx, user["username"], user["password"])
    if token is None:
        _finish(vu, started, False, "login failed")
    await vu.sleep(ctx.step_pause_seconds)

    response = await get_current_user(vu, ctx, token)
    _finish(vu, started, response is not None and response.status_code == 200, "get user failed")


async def power_user_workflow(vu: VirtualUser) -> None:
    """Register a power user and create contacts in bulk with short pauses."""
    ctx = _context(vu)
    started = time.perf_counter()
    suffix = unique_suffix()
    user = {
        "username": f"poweruser_{vu.worker_id}_{suffix}",
        "password": POWER_USER_PASSWORD,
        "name": f"Power User {vu.worker_id}",
    }

    response = await register_user(vu, ctx, user)
    if response is None or response.status_code != 200:
        _finish(vu, started, False, "registration failed")

    token = await login_user(vu, ctx, user["username"], user["password"])
    if token is None:
        _finish(vu, started, False, "login failed")

    failures = 0
    for i in range(random.randint(*POWER_USER_BULK)):
        contact = {
            "first_name": f"Bulk{i}",
            "last_name": "PowerContact",
            "email": f"bulk{i}.{suffix}@advanced.example.com",
            "phone": f"08123456789{i}",
        }
        if not await create_contact(vu, ctx, token, contact):
            failures += 1
        await vu.sleep(ctx.step_pause_seconds / 5)

    _finish(vu, started, failures == 0, f"{failures} bulk contact(s) not created")


async def mobile_user_workflow(vu: VirtualUser) -> None:
    """Short session: log in a pre-created user, sometimes add one contact."""
    ctx = _context(vu)
    user = _pick_user(ctx)
    if user is None:
        logger.debug("No pre-created users available for mobile, skipping")
        await vu.sleep(ctx.step_pause_seconds / 2)
        return
    started = time.perf_counter()

    token = await login_user(vu, ctx, user["username"], user["password"])
    if token is None:
        _finish(vu, started, False, "login failed")

    ok = True
    if random.random() < MOBILE_CONTACT_RATIO:
        contact = {
            "first_name": "Mobile",
            "last_name": "Contact",
            "email": f"mobile.{unique_suffix()}@quick.example.com",
            "phone": "081234567890",
        }
        ok = await create_contact(vu, ctx, token, contact)
    await vu.sleep(ctx.step_pause_seconds / 2)
    _finish(vu, started, ok, "contact not created")


async def ping_workflow(vu: VirtualUser) -> None:
    ctx = _context(vu)
    response = await ping(vu, ctx)
    if response is None or response.status_code != 200:
        raise WorkloadIterationError("ping failed")


# Realistic mix: 30% new users, 40% returning users, 30% browsing.
average_user_workflow = WeightedWorkload(
    {
        "new_user": (new_user_workflow, 30),
        "existing_user": (existing_user_workflow, 40),
        "browsing": (browsing_workflow, 30),
    },
    mode="random",
)


# =============================================================================
# Setup / teardown
# =============================================================================


async def setup(
    user_count: int = DEFAULT_USER_COUNT,
    base_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    step_pause_seconds: float = 1.0,
) -> ContactsContext:
    """
    Open the shared client and pre-create users for the login flows.

    Users that already exist from an earlier run are kept if they can log in.
    """
    client = make_client(base_url, transport)
    ctx = ContactsContext(
        base_url=str(client.base_url),
        client=client,
        step_pause_seconds=step_pause_seconds,
    )
    logger.info("Preparing contact API workload against %s", ctx.base_url)

    for i in range(1, user_count + 1):
        user = {
            "username": f"loadbench_user{i}",
            "password": DEFAULT_PASSWORD,
            "name": f"Load Test User {i}",
        }
        response = await register_user(None, ctx, user)
        if response is not None and response.status_code == 200:
            ctx.users.append(user)
            logger.info("Pre-created user: %s", user["username"])
        elif await login_user(None, ctx, user["username"], user["password"]):
            ctx.users.append(user)
            logger.info("Reusing existing user: %s", user["username"])
        else:
            logger.warning("Could not pre-create user %s", user["username"])

    return ctx


async def teardown(ctx: Optional[ContactsContext]) -> None:
    if ctx is None:
        return
    elapsed = datetime.now(UTC) - ctx.started_at
    logger.info(
        "Contact API workload finished: %d pre-created user(s), %.0fs elapsed",
        len(ctx.users),
        elapsed.total_seconds(),
    )
    await ctx.client.aclose()
