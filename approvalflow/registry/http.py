"""HTTP-backed service endpoints."""

from __future__ import annotations

import logging
import string
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

import httpx

from ..exceptions import StepExecutionFailure

if TYPE_CHECKING:
    from ..config import ApprovalflowConfig
    from . import HandlerRegistry

logger = logging.getLogger(__name__)


class HttpEndpoint:
    """Calls a URL template with the step's input data as JSON.

    Placeholders such as ``{userId}`` are filled from the input data. A JSON
    object response becomes the step output; any other body is returned
    under ``response``.
    """

    def __init__(
        self,
        url: str,
        method: str = "POST",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.method = method.upper()
        self.timeout = timeout
        self._transport = transport

    def render_url(self, data: Mapping[str, Any]) -> str:
        fields = [f for _, f, _, _ in string.Formatter().parse(self.url) if f]
        missing = [f for f in fields if f not in data]
        if missing:
            raise StepExecutionFailure(
                f"Missing values for {self.url}: {', '.join(sorted(missing))}"
            )
        return self.url.format(**{f: data[f] for f in fields})

    async def __call__(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        url = self.render_url(data)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            if self.method in ("GET", "DELETE"):
                response = await client.request(self.method, url, params=dict(data))
            else:
                response = await client.request(self.method, url, json=dict(data))
        logger.info(f"{self.method} {url} -> {response.status_code}")
        response.raise_for_status()
        if not response.content:
            return {"status_code": response.status_code}
        try:
            body = response.json()
        except ValueError:
            return {"status_code": response.status_code, "response": response.text}
        if isinstance(body, dict):
            return body
        return {"status_code": response.status_code, "response": body}


def build_service_registry(
    config: Optional["ApprovalflowConfig"] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> "HandlerRegistry":
    """Register one ``HttpEndpoint`` per entry in ``config.services``."""
    from . import HandlerRegistry

    registry = HandlerRegistry("service endpoint")
    if config is None:
        return registry
    for name, service in config.services.items():
        registry.register(
            name,
            HttpEndpoint(
                service.url,
                method=service.method,
                timeout=service.timeout,
                transport=transport,
            ),
        )
    return registry
