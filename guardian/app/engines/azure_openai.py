"""
Azure OpenAI backed vision and logic engines.

Both engines request JSON-mode completions and hand the raw text to the
schema-validated decoder. Transport failures are normalized into the
Guardian error taxonomy:

  timeout / connection / 429 / 5xx   -> UpstreamEngineError (transient)
  400 / refusal / empty choice       -> UpstreamEngineError (non-transient)
  401 / 403 / credential failure     -> ConfigurationError
  contract violation in the answer   -> AggregationInputError
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional

import openai
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import (
    DefaultAzureCredential,
    get_bearer_token_provider,
)
from openai import AsyncAzureOpenAI

from guardian.app.config import GuardianConfig
from guardian.app.engines.decoding import decode_engine_response
from guardian.app.errors import ConfigurationError, UpstreamEngineError
from guardian.app.schemas.evidence import LogicResult, VisionResult
from guardian.app.schemas.request import DocumentPayload

logger = logging.getLogger(__name__)


VISION_INSTRUCTIONS = (
    "You are a document forensics analyst. Analyze this {document_type} "
    "for micro-inconsistencies in font kerning, logo resolution, and stamp "
    "alignment. Look for traces of AI-inpainting or digital overlays. "
    "Respond with a JSON object with keys: 'confidence' (number 0-1, how "
    "likely the document is authentic), 'anomalies' (array of objects with "
    "'field', 'reason', 'severity' in low|medium|high), and "
    "'extracted_fields' (array of objects with 'name' and 'value')."
)

LOGIC_INSTRUCTIONS = (
    "You validate the narrative consistency of an identity document. "
    "Compare the fields extracted from a {document_type} with the "
    "claims supplied by the relying party. Check for cross-document "
    "discrepancies and logical anachronisms. Respond with a JSON object "
    "with keys: 'confidence' (number 0-1, how consistent the document is) "
    "and 'discrepancies' (array of objects with 'field', 'reason', "
    "'severity' in low|medium|high)."
)


class AzureOpenAIEngine:
    """
    Shared Azure OpenAI plumbing (Entra ID authentication, JSON mode,
    error normalization).
    """

    engine_name = "azure_openai"

    def __init__(
        self,
        *,
        endpoint: str,
        deployment: str,
        api_version: str,
        timeout_seconds: float = 30.0,
        client: Optional[AsyncAzureOpenAI] = None,
    ) -> None:
        if not endpoint or not deployment:
            raise ConfigurationError(
                f"{self.engine_name} engine requires an endpoint and a deployment"
            )

        self._deployment = deployment

        if client is not None:
            self._client = client
            return

        credential = DefaultAzureCredential()
        token_provider = get_bearer_token_provider(
            credential,
            "https://cognitiveservices.azure.com/.default",
        )

        self._client = AsyncAzureOpenAI(
            azure_endpoint=endpoint,
            azure_ad_token_provider=token_provider,
            api_version=api_version,
            timeout=timeout_seconds,
            # Retries are owned by the orchestrator's engine pool
            max_retries=0,
        )

    @classmethod
    def from_config(cls, config: GuardianConfig, **kwargs: Any):
        return cls(
            endpoint=config.AZURE_OPENAI_ENDPOINT,
            deployment=config.AZURE_OPENAI_DEPLOYMENT,
            api_version=config.AZURE_OPENAI_API_VERSION,
            timeout_seconds=config.ENGINE_TIMEOUT_SECONDS,
            **kwargs,
        )

    async def _complete_json(self, messages: List[Dict[str, Any]]) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self._deployment,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=0,
            )
        except openai.APITimeoutError as exc:
            raise UpstreamEngineError(
                f"{self.engine_name} engine timed out",
                engine=self.engine_name,
                transient=True,
            ) from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise ConfigurationError(
                f"{self.engine_name} engine rejected the service credentials"
            ) from exc
        except ClientAuthenticationError as exc:
            raise ConfigurationError(
                f"{self.engine_name} engine credential could not be acquired"
            ) from exc
        except (
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as exc:
            raise UpstreamEngineError(
                f"{self.engine_name} engine unavailable: {type(exc).__name__}",
                engine=self.engine_name,
                transient=True,
            ) from exc
        except openai.APIStatusError as exc:
            raise UpstreamEngineError(
                f"{self.engine_name} engine refused the request "
                f"(HTTP {exc.status_code})",
                engine=self.engine_name,
                transient=False,
            ) from exc

        if not response.choices:
            raise UpstreamEngineError(
                f"{self.engine_name} engine returned no choices",
                engine=self.engine_name,
                transient=False,
            )

        message = response.choices[0].message
        if getattr(message, "refusal", None):
            raise UpstreamEngineError(
                f"{self.engine_name} engine refused to analyze the document",
                engine=self.engine_name,
                transient=False,
            )

        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                "%s engine usage: prompt=%s completion=%s",
                self.engine_name,
                getattr(usage, "prompt_tokens", None),
                getattr(usage, "completion_tokens", None),
            )

        return message.content or ""


class AzureVisionEngine(AzureOpenAIEngine):
    """Vision-language engine over a multimodal deployment."""

    engine_name = "vision"

    async def analyze(self, payload: DocumentPayload) -> VisionResult:
        encoded = base64.b64encode(payload.content).decode("ascii")

        messages = [
            {
                "role": "system",
                "content": VISION_INSTRUCTIONS.format(
                    document_type=payload.document_type
                ),
            },
            {
                "role": "user",
                "content": [
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:{payload.mime_type};base64,{encoded}",
                        },
                    },
                ],
            },
        ]

        raw = await self._complete_json(messages)
        return decode_engine_response(raw, VisionResult, engine=self.engine_name)


class AzureLogicEngine(AzureOpenAIEngine):
    """Narrative-consistency engine over a text deployment."""

    engine_name = "logic"

    async def validate(
        self,
        *,
        extracted_fields: Dict[str, Any],
        context_claims: Dict[str, Any],
        document_type: str,
    ) -> LogicResult:
        material = json.dumps(
            {
                "document_fields": extracted_fields,
                "context_claims": context_claims,
            },
            ensure_ascii=False,
            sort_keys=True,
            default=str,
        )

        messages = [
            {
                "role": "system",
                "content": LOGIC_INSTRUCTIONS.format(document_type=document_type),
            },
            {"role": "user", "content": material},
        ]

        raw = await self._complete_json(messages)
        return decode_engine_response(raw, LogicResult, engine=self.engine_name)
