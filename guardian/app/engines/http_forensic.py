"""
HTTP forensic engine client.

Posts the raw document bytes to a forensic metadata analyzer (EXIF
consistency, double-compression fingerprints, sensor noise, overlay
layers) and decodes its JSON verdict.

A single httpx.AsyncClient is shared across calls so connection pooling
is preserved. Per-call timeouts are set at the request level.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from guardian.app.config import GuardianConfig
from guardian.app.engines.decoding import decode_engine_response
from guardian.app.errors import ConfigurationError, UpstreamEngineError
from guardian.app.schemas.evidence import ForensicResult
from guardian.app.schemas.request import DocumentPayload

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class HttpForensicEngine:
    engine_name = "forensic"

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ConfigurationError("forensic engine requires a base URL")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client or httpx.AsyncClient()

    @classmethod
    def from_config(cls, config: GuardianConfig) -> "HttpForensicEngine":
        return cls(
            base_url=config.FORENSIC_ENGINE_URL,
            timeout_seconds=config.ENGINE_TIMEOUT_SECONDS,
        )

    async def scan(self, payload: DocumentPayload) -> ForensicResult:
        try:
            response = await self._client.post(
                f"{self._base_url}/scan",
                content=payload.content,
                headers={
                    "Content-Type": payload.mime_type,
                    "X-Document-Type": payload.document_type,
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise UpstreamEngineError(
                "forensic engine timed out",
                engine=self.engine_name,
                transient=True,
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("forensic engine: HTTP %s", status)

            if status in (401, 403):
                raise ConfigurationError(
                    f"forensic engine rejected the service credentials (HTTP {status})"
                ) from exc

            raise UpstreamEngineError(
                f"forensic engine returned HTTP {status}",
                engine=self.engine_name,
                transient=status in _TRANSIENT_STATUS,
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamEngineError(
                f"forensic engine unreachable: {type(exc).__name__}",
                engine=self.engine_name,
                transient=True,
            ) from exc

        return decode_engine_response(
            response.content,
            ForensicResult,
            engine=self.engine_name,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
