"""HTTP transport for webhook steps and the process status callback.

Thin httpx wrapper implementing ``workflow.interfaces.HttpTransport``.
Timeouts are enforced by the caller (the webhook handler races the request
against its own timer); this layer only validates the target and performs
the request.
"""

import ipaddress
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from workflow.interfaces import HttpResponse

logger = structlog.get_logger(__name__)

FORBIDDEN_PORTS = (5432, 6379, 9000)  # postgres, redis, internal services


def _is_private_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local


def validate_url_safety(url: str) -> None:
    """SSRF guard for outbound webhook calls.

    Raises:
        ValueError: Scheme is not http(s), host is missing, local or private,
            or the port is an internal service port.
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")

    if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
        raise ValueError("Connections to localhost are not allowed")

    # Domain names are not resolved here
    if _is_private_ip(hostname):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")

    if parsed.port in FORBIDDEN_PORTS:
        raise ValueError(f"Connections to internal port {parsed.port} are not allowed")


class HttpxTransport:
    """Performs webhook requests with an ``httpx.AsyncClient``.

    Args:
        client: Shared client; when omitted a client is opened per request.
        block_private_hosts: Reject localhost/private targets before sending.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, block_private_hosts: bool = True):
        self._client = client
        self.block_private_hosts = block_private_hosts

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[str] = None,
    ) -> HttpResponse:
        if self.block_private_hosts:
            validate_url_safety(url)

        kwargs = {
            "method": method.upper(),
            "url": url,
            "headers": headers or {},
            "content": body,
            "follow_redirects": True,
        }

        if self._client is not None:
            response = await self._client.request(**kwargs)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.request(**kwargs)

        logger.debug("HTTP request finished", method=kwargs["method"], url=url, status_code=response.status_code)
        return HttpResponse(
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class ProcessStatusWebhook:
    """Status sync callback that POSTs each instance status change to the host.

    Non-2xx responses raise ``httpx.HTTPStatusError`` so the status sync
    retries and, once exhausted, dead-letters the update.
    """

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self.url = url
        self._client = client
        self.timeout = timeout

    async def __call__(self, process_id: str, status, instance_id: str) -> None:
        payload = {
            "processId": process_id,
            "status": getattr(status, "value", status),
            "instanceId": instance_id,
        }
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()
        logger.debug("Process status pushed", process_id=process_id, status=payload["status"])
