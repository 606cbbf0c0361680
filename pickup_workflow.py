"""
Pickup Workflow Executor
========================
Runs one virtual-user iteration against the Pickup Service API: an ordered
chain of HTTP steps where later steps may depend on values extracted from
earlier responses.

Step outcomes:
- passed / failed: request sent, checks evaluated, recorded in metrics
- skipped: a required extraction is missing; nothing is sent or recorded

Transport failures (timeouts, refused connections) come back from the HTTP
client as status 0 and fail their checks like any other bad response.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp

from load_metrics import COUNTER, RATE, TREND, MetricsCollector
from payloads import (
    TokenPool,
    notice_payload,
    order_payload,
    registration_payload,
    registration_update_payload,
    unique_id,
)

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "User-Agent": "PickupLoadTest/1.0",
}


# =============================================================================
# HTTP CLIENT
# =============================================================================

@dataclass
class HttpResponse:
    """Response as seen by checks and extractions. ``status == 0`` means transport failure."""
    status: int
    duration_ms: float
    body: bytes = b""
    error: Optional[str] = None

    @cached_property
    def _parsed(self) -> Any:
        return json.loads(self.body) if self.body else None

    def json(self, path: Optional[str] = None) -> Any:
        """
        Parsed JSON body, optionally narrowed by a dotted path (``"data.id"``).
        Missing keys yield None; a body that is not JSON raises ValueError.
        """
        value = self._parsed
        if path is None:
            return value
        for key in path.split("."):
            if isinstance(value, dict):
                value = value.get(key)
            elif isinstance(value, list) and key.isdigit() and int(key) < len(value):
                value = value[int(key)]
            else:
                return None
        return value


class AiohttpClient:
    """Thin ``request()`` capability over a shared aiohttp session."""

    def __init__(self, session: aiohttp.ClientSession, verify_ssl: bool = True):
        self.session = session
        self.verify_ssl = verify_ssl

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> HttpResponse:
        kwargs: Dict[str, Any] = {"headers": headers, "json": json, "params": params}
        if not self.verify_ssl:
            kwargs["ssl"] = False

        start = time.perf_counter()
        try:
            async with self.session.request(method, url, **kwargs) as response:
                body = await response.read()
                latency = (time.perf_counter() - start) * 1000
                return HttpResponse(status=response.status, duration_ms=latency, body=body)
        except asyncio.TimeoutError:
            error = "Timeout"
        except aiohttp.ClientConnectorError as e:
            error = f"ConnectionError: {type(e).__name__}"
        except aiohttp.ClientError as e:
            error = type(e).__name__

        return HttpResponse(status=0, duration_ms=(time.perf_counter() - start) * 1000, error=error)


# =============================================================================
# CHECKS & EXTRACTIONS
# =============================================================================

@dataclass(frozen=True)
class Check:
    name: str
    predicate: Callable[[HttpResponse], bool]

    def evaluate(self, response: HttpResponse) -> bool:
        try:
            return bool(self.predicate(response))
        except (ValueError, KeyError, TypeError, AttributeError, IndexError):
            # Non-JSON or oddly shaped bodies fail the check.
            return False


def status_is(name: str, status: int) -> Check:
    return Check(name, lambda r: r.status == status)


def json_equals(name: str, path: str, expected: Any) -> Check:
    return Check(name, lambda r: r.json(path) == expected)


@dataclass(frozen=True)
class Found:
    value: Any


class _NotFound:
    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()

ExtractionResult = Union[Found, _NotFound]
ExtractionStrategy = Callable[[HttpResponse], ExtractionResult]


def json_field(path: str) -> ExtractionStrategy:
    """Strategy reading a dotted JSON path. Falsy values count as absent."""
    def strategy(response: HttpResponse) -> ExtractionResult:
        try:
            value = response.json(path)
        except ValueError:
            return NOT_FOUND
        if value is None or value is False or value == "" or value == 0:
            return NOT_FOUND
        return Found(value)
    return strategy


@dataclass(frozen=True)
class Extract:
    """Store the first value found by ``strategies`` under ``key``."""
    key: str
    strategies: Tuple[ExtractionStrategy, ...]

    def run(self, response: HttpResponse) -> ExtractionResult:
        for strategy in self.strategies:
            result = strategy(response)
            if isinstance(result, Found):
                return result
        return NOT_FOUND


# =============================================================================
# STEPS & CONTEXT
# =============================================================================

@dataclass
class IterationContext:
    vu: int
    iteration: int
    token: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)

    def unique_id(self) -> str:
        return unique_id(self.vu, self.iteration)

    def missing(self, keys: Sequence[str]) -> List[str]:
        return [k for k in keys if k not in self.state]


PayloadBuilder = Callable[[IterationContext], Dict[str, Any]]


@dataclass
class WorkflowStep:
    name: str
    method: str
    path: str
    title: str = ""
    auth: bool = True
    payload: Optional[PayloadBuilder] = None
    query: Optional[Dict[str, Any]] = None
    checks: Sequence[Check] = ()
    requires: Tuple[str, ...] = ()
    extract: Optional[Extract] = None

    @property
    def metric_name(self) -> str:
        return f"{self.name}_duration"


@dataclass
class StepResult:
    name: str
    skipped: bool = False
    passed: bool = False
    status: int = 0
    duration_ms: float = 0
    error: Optional[str] = None
    failed_checks: List[str] = field(default_factory=list)


# =============================================================================
# EXECUTOR
# =============================================================================

class WorkflowExecutor:
    """
    Executes the step chain once per call. Steps run strictly in order with
    no pause between them; the think time belongs to the calling slot.
    """

    def __init__(
        self,
        client: Any,
        steps: Sequence[WorkflowStep],
        metrics: MetricsCollector,
        token_pool: Optional[TokenPool] = None,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
    ):
        self.client = client
        self.steps = list(steps)
        self.metrics = metrics
        self.token_pool = token_pool
        self.base_url = base_url.rstrip("/")
        self.headers = headers or dict(DEFAULT_HEADERS)

        names = [s.name for s in self.steps]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate step names in workflow: {names}")

        for step in self.steps:
            metrics.register(step.metric_name, TREND)
        metrics.register("http_req_duration", TREND)
        metrics.register("http_req_failed", RATE)
        metrics.register("http_reqs", COUNTER)
        metrics.register("error_rate", RATE)
        metrics.register("checks", RATE)
        metrics.register("successful_requests", COUNTER)

    async def run_iteration(self, vu: int, iteration: int, token: Optional[str] = None) -> List[StepResult]:
        if token is None and self.token_pool is not None:
            token = self.token_pool.sample()
        context = IterationContext(vu=vu, iteration=iteration, token=token)

        results = []
        for step in self.steps:
            missing = context.missing(step.requires)
            if missing:
                logger.debug("vu %d iter %d: skipping %s, missing %s", vu, iteration, step.name, missing)
                results.append(StepResult(name=step.name, skipped=True))
                continue
            results.append(await self._run_step(step, context))
        return results

    def _build_headers(self, step: WorkflowStep, context: IterationContext) -> Dict[str, str]:
        headers = dict(self.headers)
        if step.auth and context.token:
            headers["Authorization"] = f"Bearer {context.token}"
        return headers

    async def _run_step(self, step: WorkflowStep, context: IterationContext) -> StepResult:
        url = self.base_url + step.path.format(**context.state)
        payload = step.payload(context) if step.payload else None

        response = await self.client.request(
            step.method,
            url,
            headers=self._build_headers(step, context),
            json=payload,
            params=step.query,
        )

        m = self.metrics
        m.add_trend(step.metric_name, response.duration_ms)
        m.add_trend("http_req_duration", response.duration_ms)
        m.add_counter("http_reqs")
        m.add_rate("http_req_failed", not 200 <= response.status < 400)
        if response.error:
            m.record_error(response.error)

        failed_checks = []
        for check in step.checks:
            ok = check.evaluate(response)
            m.add_check(check.name, ok)
            if not ok:
                failed_checks.append(check.name)

        passed = not failed_checks
        m.add_rate("error_rate", not passed)

        if passed:
            m.add_counter("successful_requests")
            if step.extract:
                extracted = step.extract.run(response)
                if isinstance(extracted, Found):
                    context.state[step.extract.key] = extracted.value
                else:
                    logger.debug("%s passed but %s was not found in the response", step.name, step.extract.key)
        else:
            logger.debug("%s failed (status %s): %s", step.name, response.status, ", ".join(failed_checks))

        return StepResult(
            name=step.name,
            passed=passed,
            status=response.status,
            duration_ms=response.duration_ms,
            error=response.error,
            failed_checks=failed_checks,
        )


# =============================================================================
# PICKUP SERVICE WORKFLOW
# =============================================================================

PAGE_QUERY = {"page": 1, "page_size": 20}

REGISTRATION_ID = Extract("registration_id", (json_field("data.id"), json_field("data.ID")))


def pickup_workflow() -> List[WorkflowStep]:
    """The registration -> order -> notice journey, in execution order."""
    return [
        WorkflowStep(
            name="health_check",
            title="健康检查 - GET /health",
            method="GET",
            path="/health",
            auth=False,
            checks=[
                status_is("health status 200", 200),
                json_equals("health body ok", "status", "ok"),
            ],
        ),
        WorkflowStep(
            name="create_registration",
            title="创建报名 - POST /registrations",
            method="POST",
            path="/registrations",
            payload=lambda ctx: registration_payload(ctx.unique_id()),
            checks=[
                status_is("create reg status 201", 201),
                json_equals("create reg code 0", "code", 0),
            ],
            extract=REGISTRATION_ID,
        ),
        WorkflowStep(
            name="list_registrations",
            title="查询报名列表 - GET /registrations",
            method="GET",
            path="/registrations",
            query=PAGE_QUERY,
            checks=[
                status_is("list reg status 200", 200),
                json_equals("list reg code 0", "code", 0),
            ],
        ),
        WorkflowStep(
            name="get_registration",
            title="查询报名详情 - GET /registrations/:id",
            method="GET",
            path="/registrations/{registration_id}",
            requires=("registration_id",),
            checks=[status_is("get reg status 200", 200)],
        ),
        WorkflowStep(
            name="update_registration",
            title="更新报名 - PUT /registrations/:id",
            method="PUT",
            path="/registrations/{registration_id}",
            requires=("registration_id",),
            payload=lambda ctx: registration_update_payload(),
            checks=[status_is("update reg status 200", 200)],
        ),
        WorkflowStep(
            name="create_order",
            title="创建订单 - POST /orders",
            method="POST",
            path="/orders",
            requires=("registration_id",),
            payload=lambda ctx: order_payload(ctx.state["registration_id"]),
            checks=[
                status_is("create order status 201", 201),
                json_equals("create order code 0", "code", 0),
            ],
        ),
        WorkflowStep(
            name="list_orders",
            title="查询订单列表 - GET /orders",
            method="GET",
            path="/orders",
            query=PAGE_QUERY,
            checks=[status_is("list orders status 200", 200)],
        ),
        WorkflowStep(
            name="list_notices",
            title="查询消息列表 - GET /notices",
            method="GET",
            path="/notices",
            auth=False,
            query=PAGE_QUERY,
            checks=[
                status_is("list notices status 200", 200),
                json_equals("list notices code 0", "code", 0),
            ],
        ),
        WorkflowStep(
            name="create_notice",
            title="创建消息(管理端) - POST /admin/notices",
            method="POST",
            path="/admin/notices",
            payload=lambda ctx: notice_payload(ctx.unique_id()),
            checks=[status_is("create notice status 201", 201)],
        ),
    ]
