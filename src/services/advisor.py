"""
LLM service for generating remediation advice.
"""
import logging
import re
import json
import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Tuple, Any
from botocore.exceptions import ClientError
import boto3

from src.config import settings
from src.models import ActivityStatus, RemediationAdvice
from src.prompts.prompts import build_remediation_prompt
from src.schemas import IdentitySummary

logger = logging.getLogger(__name__)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def generate(
        self, prompt: str, max_tokens: int, summary: IdentitySummary | None = None
    ) -> str:
        """Generate text from LLM."""
        pass

    @abstractmethod
    def get_model_identifier(self) -> str:
        """Return model identifier for logging."""
        pass


class MockLLMProvider(LLMProvider):
    """
    Mock LLM provider for testing/demo.
    Generates a deterministic response from the identity summary.
    """

    def get_model_identifier(self) -> str:
        return "mock-llm-v1-dynamic"

    async def generate(
        self, prompt: str, max_tokens: int, summary: IdentitySummary | None = None
    ) -> str:
        logger.debug("Mock LLM generating dynamic response")
        await asyncio.sleep(0.01)

        if not summary:
            return json.dumps(
                {
                    "risk": "No identity summary provided.",
                    "action": "Investigate.",
                    "rationale": "Summary was missing from context.",
                }
            )

        name = summary.principal_display_name or summary.principal_id
        unused = summary.unused_permissions

        if summary.activity_status == ActivityStatus.QUERY_FAILED:
            risk = f"Usage of '{name}' could not be determined."
            action = "Re-run the review before changing any permission."
            rationale = "The activity log query for this identity failed."
        elif summary.activity_status == ActivityStatus.NO_ACTIVITY:
            risk = f"'{name}' holds {len(unused)} permissions and made no API calls."
            action = "Confirm the application is still needed, then remove its grants."
            rationale = "No Graph activity was observed during the review window."
        else:
            risk = f"'{name}' holds {len(unused)} unused of {summary.assigned_count} permissions."
            action = f"Remove {', '.join(repr(p) for p in unused)}."
            rationale = "These permissions were not required by any observed call."

        return json.dumps({"risk": risk, "action": action, "rationale": rationale})


class BedrockProvider(LLMProvider):
    """
    AWS Bedrock provider.
    """

    def __init__(self, model_id: str, temperature: float, max_tokens: int):
        try:
            session_kwargs = {"region_name": settings.aws_region}

            if settings.has_aws_credentials:
                logger.info("Using explicit AWS credentials from environment")
                session_kwargs["aws_access_key_id"] = settings.aws_access_key_id
                session_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key

                if settings.aws_session_token:
                    session_kwargs["aws_session_token"] = settings.aws_session_token
            else:
                logger.info("Using default AWS credential chain (CLI/IAM role)")

            session = boto3.Session(**session_kwargs)
            self.client = session.client("bedrock-runtime")
            self.model_id = model_id
            self.temperature = temperature
            self.default_max_tokens = max_tokens
            logger.info(f"BedrockProvider initialized for model: {self.model_id}")
        except Exception as e:
            logger.error(f"Failed to initialize Bedrock client: {e}", exc_info=True)
            raise RuntimeError(f"Failed to initialize Bedrock client: {e}")

    def get_model_identifier(self) -> str:
        return f"bedrock:{self.model_id}"

    def _build_request(self, prompt: str, max_tokens: int) -> str:
        if "amazon.titan" in self.model_id:
            native_request = {
                "inputText": prompt,
                "textGenerationConfig": {
                    "maxTokenCount": max_tokens,
                    "temperature": self.temperature,
                    "stopSequences": [],
                },
            }
        elif "anthropic.claude" in self.model_id:
            native_request = {
                "anthropic_version": "bedrock-2023-05-31",
                "max_tokens": max_tokens,
                "temperature": self.temperature,
                "messages": [
                    {"role": "user", "content": [{"type": "text", "text": prompt}]}
                ],
            }
        else:
            raise NotImplementedError(
                f"Model format for {self.model_id} not implemented."
            )
        return json.dumps(native_request)

    async def generate(
        self, prompt: str, max_tokens: int, summary: IdentitySummary | None = None
    ) -> str:
        """Generate response using Bedrock's native formats."""
        final_max_tokens = max_tokens or self.default_max_tokens

        try:
            request_body = self._build_request(prompt, final_max_tokens)
            response = await asyncio.to_thread(
                self.client.invoke_model,
                modelId=self.model_id,
                body=request_body,
                contentType="application/json",
                accept="application/json",
            )
            model_response = json.loads(response["body"].read())

            if "amazon.titan" in self.model_id:
                return model_response["results"][0]["outputText"]
            return model_response["content"][0]["text"]

        except ClientError as e:
            if e.response["Error"]["Code"] == "ValidationException":
                logger.error(
                    f"Bedrock ValidationException: {e}. Check if model is enabled in AWS."
                )
                raise RuntimeError(f"Bedrock ValidationException: {e}")
            logger.error(f"Bedrock ClientError: {e}", exc_info=True)
            raise RuntimeError(f"Bedrock ClientError: {e}")
        except Exception as e:
            logger.error(f"Bedrock generation error: {e}", exc_info=True)
            raise RuntimeError(f"Bedrock generation error: {e}")


class AdvisorService:
    def __init__(self):
        self.status: dict[str, Any] = {"provider": "uninitialized"}
        self._fallback_provider = MockLLMProvider()
        self.provider = self._init_provider()

    def _init_provider(self) -> LLMProvider:
        if settings.use_mock_llm or settings.llm_provider == "mock":
            logger.info("Using Mock LLM provider")
            provider = self._fallback_provider
        elif settings.llm_provider == "bedrock":
            logger.info(
                f"Using Bedrock provider with model: {settings.bedrock_model_id}"
            )
            try:
                provider = BedrockProvider(
                    model_id=settings.bedrock_model_id,
                    temperature=settings.bedrock_model_temperature,
                    max_tokens=settings.bedrock_model_max_tokens,
                )
            except Exception as exc:
                logger.error(
                    "Bedrock initialization failed, falling back to mock: %s", exc
                )
                provider = self._fallback_provider
        else:
            logger.error(
                f"Unknown LLM provider '{settings.llm_provider}', falling back to mock."
            )
            provider = self._fallback_provider

        self.status = {
            "provider": provider.__class__.__name__,
            "using_mock": isinstance(provider, MockLLMProvider),
            "fallback": provider is self._fallback_provider
            and not (settings.use_mock_llm or settings.llm_provider == "mock"),
            "model_identifier": provider.get_model_identifier(),
        }
        return provider

    def _parse_and_validate_response(self, response_text: str) -> Tuple[str, str, str]:
        try:
            json_match = re.search(r"\{.*\}", response_text, re.DOTALL)
            if not json_match:
                raise ValueError(
                    f"No JSON object found in LLM response: {response_text}"
                )

            data = json.loads(json_match.group(0))

            risk = data.get("risk")
            action = data.get("action")
            rationale = data.get("rationale")

            if not (risk and action and rationale):
                raise ValueError("JSON object is missing required keys.")

            return risk, action, rationale

        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(
                f"LLM JSON parsing failed. Error: {e}. Response was: {response_text}"
            )
            raise ValueError(f"LLM JSON parsing failed: {e}")

    async def generate_remediation(self, summary: IdentitySummary) -> RemediationAdvice:
        prompt = build_remediation_prompt(summary)

        max_retries = 3
        start_time = time.perf_counter()

        for attempt in range(max_retries):
            try:
                response_text = await self.provider.generate(
                    prompt,
                    max_tokens=settings.bedrock_model_max_tokens,
                    summary=summary,
                )

                duration_ms = (time.perf_counter() - start_time) * 1000
                logger.info(
                    "LLM generation successful",
                    extra={
                        "principal_id": summary.principal_id,
                        "llm_model": self.provider.get_model_identifier(),
                        "duration_ms": round(duration_ms, 2),
                        "attempt": attempt + 1,
                    },
                )

                risk, action, rationale = self._parse_and_validate_response(
                    response_text
                )

                return RemediationAdvice(
                    finding_id=summary.finding_id,
                    model_identifier=self.provider.get_model_identifier(),
                    prompt=prompt,
                    response=response_text,
                    risk=risk,
                    action=action,
                    rationale=rationale,
                    generated_at=datetime.now(timezone.utc),
                )

            except (RuntimeError, ValueError) as e:
                logger.warning(
                    f"Attempt {attempt + 1}/{max_retries} failed for principal "
                    f"{summary.principal_id}. Error: {e}"
                )
                if attempt < max_retries - 1:
                    await asyncio.sleep(attempt + 1)
                else:
                    logger.error(
                        f"All {max_retries} LLM attempts failed for principal "
                        f"{summary.principal_id}. Falling back to mock response."
                    )
        return await self._get_mock_advice(summary, prompt)

    async def _get_mock_advice(
        self, summary: IdentitySummary, prompt: str
    ) -> RemediationAdvice:
        """Creates a generic fallback recommendation."""
        mock_response_text = await self._fallback_provider.generate(
            prompt, 0, summary=summary
        )
        data = json.loads(mock_response_text)

        return RemediationAdvice(
            finding_id=summary.finding_id,
            model_identifier=self._fallback_provider.get_model_identifier(),
            prompt=prompt,
            response="FALLBACK: Mock response",
            risk=data["risk"],
            action=data["action"],
            rationale=data["rationale"],
            generated_at=datetime.now(timezone.utc),
        )

    def get_status(self) -> dict:
        self.status["model_identifier"] = self.provider.get_model_identifier()
        return self.status


_advisor_service: AdvisorService | None = None


def get_advisor_service() -> AdvisorService:
    global _advisor_service
    if _advisor_service is None:
        _advisor_service = AdvisorService()
    return _advisor_service
