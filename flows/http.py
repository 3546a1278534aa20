"""
HTTP request node — calls an external API and maps the response into variables.

URL, header values and string leaves of the body are interpolated. The call
is bounded by the node timeout (or the configured default). Any transport
error or non-2xx status raises ExternalCallError; the walk step aborts and
the session stays at its last persisted node.
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional

import httpx
import structlog

from flows.errors import ExternalCallError
from flows.interpolation import interpolate_value, replace_variables
from models.flow import FlowSession, HttpRequestData
from utils.conditions import get_nested_value

logger = structlog.get_logger()


def build_headers(data: HttpRequestData, session: FlowSession,
                  context: Optional[Mapping[str, Any]] = None) -> dict[str, str]:
    if isinstance(data.headers, dict):
        pairs = data.headers.items()
    else:
        pairs = ((h.key, h.value) for h in data.headers if h.key)
    return {k: str(replace_variables(v, session, context)) for k, v in pairs}


def build_body(data: HttpRequestData, session: FlowSession,
               context: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """httpx keyword arguments for the request body."""
    if data.body is None or data.body == "" or data.method.upper() in ("GET", "DELETE", "HEAD"):
        return {}
    if isinstance(data.body, str):
        rendered = replace_variables(data.body, session, context)
        try:
            return {"json": json.loads(rendered)}
        except ValueError:
            return {"content": rendered}
    return {"json": interpolate_value(data.body, session, context)}


def _parse(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def extract_mappings(data: HttpRequestData, payload: Any, status_code: int) -> dict[str, Any]:
    """Variables produced by a response."""
    values: dict[str, Any] = {}
    for mapping in data.response_mappings:
        if not mapping.variable:
            continue
        values[mapping.variable] = get_nested_value(payload, mapping.path)
    if data.response_variable:
        values[data.response_variable] = payload
    if data.status_variable:
        values[data.status_variable] = status_code
    return values


async def execute_http_request(
    data: HttpRequestData,
    session: FlowSession,
    client: httpx.AsyncClient,
    node_id: str = "",
    default_timeout: float = 15.0,
    context: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    """Perform the request; return the variable updates it yields."""
    url = replace_variables(data.url, session, context)
    if not url:
        raise ExternalCallError("http_request node has no url",
                                session_id=session.id, node_id=node_id)
    method = data.method.upper()
    timeout = data.timeout_seconds or default_timeout

    try:
        response = await client.request(
            method, url,
            headers=build_headers(data, session, context),
            timeout=timeout,
            **build_body(data, session, context),
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise ExternalCallError(
            f"{method} {url} returned {e.response.status_code}",
            session_id=session.id, node_id=node_id,
            status_code=e.response.status_code,
        ) from e
    except httpx.HTTPError as e:
        raise ExternalCallError(f"{method} {url} failed: {e}",
                                session_id=session.id, node_id=node_id) from e

    payload = _parse(response)
    logger.info("flow_http_request_done", session_id=session.id, node_id=node_id,
                method=method, status=response.status_code)
    return extract_mappings(data, payload, response.status_code)
