"""
formlogic/transport.py

Network boundary for remote conditions and remote validators.

    Transport         - protocol: ``await perform_request(request) -> payload``
    HttpxTransport    - default implementation on httpx.AsyncClient
    resolve_request() - RequestSpec + context -> concrete request mapping

Timeouts belong to the transport; callers treat them like any other failure.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, Optional, Protocol, runtime_checkable
from urllib.parse import urlencode

import httpx

from .conditions import RequestSpec
from .config import get_config
from .context import EvaluationContext
from .diagnostics import get_logger
from .errors import ResolutionFailure
from .expression_evaluator import evaluate
from .values import UNDEFINED, is_nullish, to_js_string

logger = get_logger("transport")


@runtime_checkable
class Transport(Protocol):
    async def perform_request(self, request: Mapping) -> Any:
        """Send ``{url, method?, body?, headers?}`` and return the decoded payload."""
        ...


def _jsonable(value: Any) -> Any:
    # UNDEFINED has no JSON form: dropped from objects, null in arrays
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items() if v is not UNDEFINED}
    if isinstance(value, (list, tuple)):
        return [None if v is UNDEFINED else _jsonable(v) for v in value]
    return value


class HttpxTransport:
    """
    Transport on httpx.

    Pass a shared ``client`` to reuse connections (its lifetime is then the
    caller's business); without one, each request opens a short-lived client.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout if timeout is not None else get_config().http_timeout_s
        self.headers = dict(headers or {})
        self._client = client

    def _build_kwargs(self, request: Mapping) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        body = request.get("body", UNDEFINED)
        if not is_nullish(body):
            kwargs["json"] = _jsonable(body)
        headers = {**self.headers, **dict(request.get("headers") or {})}
        if headers:
            kwargs["headers"] = headers
        return kwargs

    async def perform_request(self, request: Mapping) -> Any:
        method = str(request.get("method") or "GET").upper()
        url = str(request["url"])
        kwargs = self._build_kwargs(request)
        logger.debug("%s %s", method, url)

        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                    response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ResolutionFailure(f"{method} {url}", e, detail=e.response.status_code) from e
        except httpx.TimeoutException as e:
            logger.error("Timeout calling %s %s: %s", method, url, e)
            raise ResolutionFailure(f"{method} {url}", e, detail="timeout") from e
        except httpx.HTTPError as e:
            logger.error("Transport error calling %s %s: %s", method, url, e)
            raise ResolutionFailure(f"{method} {url}", e) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text


def append_query(url: str, params: Mapping[str, str]) -> str:
    """Append url-encoded ``params`` to ``url``."""
    if not params:
        return url
    sep = "&" if "?" in url else "?"
    return url + sep + urlencode(params)


def resolve_request(spec: RequestSpec, ctx: EvaluationContext) -> Dict[str, Any]:
    """
    Evaluate the dynamic parts of ``spec`` against ``ctx``.

    The result is the structural snapshot used both to dispatch and to key the
    response cache:

        {"url": "/api/check?name=test", "method": undefined}

    ``method`` stays UNDEFINED when not configured (the transport defaults it
    to GET). Expression faults propagate to the caller.
    """
    scope = ctx.to_scope()

    params: Dict[str, str] = {}
    for name, expression in spec.query_params.items():
        value = evaluate(expression, scope) if isinstance(expression, str) else expression
        if is_nullish(value):
            continue
        params[name] = to_js_string(value)

    resolved: Dict[str, Any] = {
        "url": append_query(spec.url, params),
        "method": spec.method if spec.method is not None else UNDEFINED,
    }

    if spec.body is not UNDEFINED:
        body = spec.body
        if spec.evaluate_body_expressions and isinstance(body, Mapping):
            body = {k: evaluate(v, scope) if isinstance(v, str) else v for k, v in body.items()}
        resolved["body"] = body
    if spec.headers:
        resolved["headers"] = dict(spec.headers)
    return resolved
