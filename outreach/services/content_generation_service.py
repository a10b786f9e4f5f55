"""
Content generation for member drafts.

Wraps the OpenAI chat completions API: the prompt carries the action type
plus the member's recent facts, signals and open opportunities, and the
JSON reply is validated into DraftContent. Without an API key the service
returns a review-only placeholder so draft generation still runs.
"""

import asyncio
import json
from typing import Any, Literal

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from outreach.config import settings
from outreach.infrastructure.observability.logging import get_logger
from outreach.repositories.member_repository import MemberRepository, member_repository

logger = get_logger(__name__)

MAX_RETRIES = 3

SYSTEM_MESSAGE = (
    "You write short, professional 1:1 member messages for a community manager. "
    "Output strict JSON with: content, autosendEligible, blockedReasons[], "
    "sendRecommendation (send|review|hold)."
)


class ContentGenerationError(Exception):
    """Raised when a draft message cannot be generated."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.api_error = api_error
        self.recoverable = recoverable


class DraftContent(BaseModel):
    """Validated model output for one draft."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    content: str = Field(min_length=1)
    autosend_eligible: bool
    blocked_reasons: list[str]
    send_recommendation: Literal["send", "review", "hold"]


def fallback_content(action_type: str) -> DraftContent:
    return DraftContent(
        content=(
            f"Draft ({action_type}): follow up with the member with a clear question "
            "and 1 concrete next step."
        ),
        autosend_eligible=False,
        blocked_reasons=["OPENAI_API_KEY not set"],
        send_recommendation="review",
    )


class ContentGenerationService:
    """
    Generates draft content for a member and action type.
    """

    def __init__(
        self,
        members: MemberRepository | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.members = members or member_repository
        self.client = client
        if self.client is None and settings.OPENAI_API_KEY:
            self.client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )

    async def generate(self, member_id: str, action_type: str) -> DraftContent:
        """
        Generate a draft for one member.

        Raises:
            ContentGenerationError: If the API fails or returns unusable JSON
        """
        if self.client is None:
            return fallback_content(action_type)

        context = await self.members.fetch_generation_context(member_id)
        user_message = json.dumps(
            {"actionType": action_type, "context": context},
            indent=2,
            default=str,
        )

        raw = await self._call_openai_with_retry(user_message)
        return self._parse(raw)

    async def _call_openai_with_retry(self, user_message: str) -> str:
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            try:
                response = await self.client.chat.completions.create(
                    model=settings.OPENAI_MODEL,
                    messages=[
                        {"role": "system", "content": SYSTEM_MESSAGE},
                        {"role": "user", "content": user_message},
                    ],
                    max_tokens=settings.OPENAI_MAX_TOKENS,
                    temperature=settings.OPENAI_TEMPERATURE,
                    response_format={"type": "json_object"},
                )

                if not response.choices or not response.choices[0].message.content:
                    raise ContentGenerationError("Empty response from OpenAI API")

                result = response.choices[0].message.content.strip()
                logger.debug(
                    "OpenAI draft call successful",
                    attempt=attempt + 1,
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return result

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning("OpenAI rate limit hit, retrying", attempt=attempt + 1, wait_time=wait_time)
                if attempt < MAX_RETRIES - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIStatusError as e:
                last_error = e
                # 4xx will not get better on retry
                if 400 <= e.status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except ContentGenerationError as e:
                last_error = e
                logger.warning("OpenAI returned no content, retrying", attempt=attempt + 1)

        raise ContentGenerationError(
            f"OpenAI API failed after {MAX_RETRIES} attempts",
            api_error=str(last_error),
            recoverable=True,
        ) from last_error

    def _parse(self, raw: str) -> DraftContent:
        try:
            data: Any = json.loads(raw)
            return DraftContent.model_validate(data)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse OpenAI response as JSON", raw_result=raw[:200])
            raise ContentGenerationError("OpenAI returned invalid JSON", recoverable=False) from e
        except ValidationError as e:
            logger.error("OpenAI response failed validation", error=str(e))
            raise ContentGenerationError(
                f"OpenAI returned an invalid draft: {e.error_count()} errors", recoverable=False
            ) from e


# Singleton instance for application use
content_generation_service = ContentGenerationService()
