"""Downstream API client.

Executes a ``DownstreamAPI`` call template with a transformed payload and
maps the HTTP outcome into protocol content.
"""

import json
import re
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from shared.errors import DownstreamError
from shared.logging import get_logger
from shared.models import DownstreamAPI

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.-]*)\}")


class DownstreamResponse(BaseModel):
    """HTTP outcome of a downstream call."""
    status: int
    status_text: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300

    def error_message(self) -> Optional[str]:
        if self.is_success:
            return None
        if isinstance(self.data, dict) and isinstance(self.data.get("message"), str):
            return self.data["message"]
        return f"HTTP {self.status}"

    def to_text(self) -> str:
        return json.dumps(
            {
                "status": self.status,
                "statusText": self.status_text,
                "headers": self.headers,
                "data": self.data,
            },
            indent=2,
            default=str,
        )


def render_template(
    template: str,
    payload: dict[str, Any],
    consumed: set[str],
    encode: bool = False,
) -> str:
    """
    Substitute ``{name}`` placeholders from the payload.

    Substituted names are added to ``consumed``; unknown placeholders are
    left untouched.
    """
    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name not in payload:
            return match.group(0)
        consumed.add(name)
        value = payload[name]
        text = value if isinstance(value, str) else json.dumps(value) if isinstance(value, (dict, list)) else str(value)
        return quote(text, safe="") if encode else text

    return _PLACEHOLDER.sub(substitute, template)


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict):
        return json.dumps(value)
    if isinstance(value, list):
        return [_query_value(v) for v in value]
    return value


class DownstreamClient:
    """
    Calls downstream APIs over a shared ``httpx.AsyncClient``.

    Every call carries an explicit timeout; timeouts and transport failures
    raise ``DownstreamError``.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def build_request(self, api: DownstreamAPI, payload: dict[str, Any]) -> httpx.Request:
        """Build the outbound request without sending it."""
        consumed: set[str] = set()
        url = render_template(api.url, payload, consumed, encode=True)

        headers = {"Content-Type": "application/json"}
        for header in api.headers:
            if header.name and header.value:
                headers[header.name] = render_template(header.value, payload, consumed)

        cookies = [
            f"{cookie.name}={render_template(cookie.value, payload, consumed)}"
            for cookie in api.cookies
            if cookie.name and cookie.value
        ]
        if cookies:
            headers["Cookie"] = "; ".join(cookies)

        params: list[tuple[str, Any]] = [
            (param.name, render_template(param.value, payload, consumed))
            for param in api.url_params
            if param.name and param.value
        ]

        remaining = {k: v for k, v in payload.items() if k not in consumed}
        body = None
        if api.method.has_body:
            body = json.dumps(remaining).encode()
        else:
            for key, value in remaining.items():
                if value is not None:
                    params.append((key, _query_value(value)))

        return self._client.build_request(
            api.method.value,
            url,
            headers=headers,
            params=params or None,
            content=body,
            timeout=self.timeout,
        )

    async def call(self, api: DownstreamAPI, payload: dict[str, Any]) -> DownstreamResponse:
        """
        Execute the API call.

        Raises:
            DownstreamError: On timeout, transport failure, an invalid URL or a
                payload that cannot be serialized
        """
        try:
            request = self.build_request(api, payload)
        except (TypeError, ValueError) as e:
            logger.warning("Downstream request could not be built", api=api.name, error=str(e))
            raise DownstreamError(f"Failed to build API request for {api.name}: {e}") from e

        try:
            response = await self._client.send(request)
        except httpx.TimeoutException as e:
            logger.warning("Downstream API timed out", api=api.name, timeout=self.timeout)
            raise DownstreamError(f"API request to {api.name} timed out after {self.timeout}s") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("Downstream API request failed", api=api.name, error=str(e))
            raise DownstreamError(f"API request failed: {e}") from e

        logger.debug("Downstream API responded", api=api.name, status=response.status_code)
        return DownstreamResponse(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=dict(response.headers),
            data=self._parse_body(response),
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return response.json()
            except ValueError:
                return None
        return response.text or None
