"""
Completion Service - schema-constrained text/vision completions
with primary + fallback model and usage accounting

Every pipeline stage receives one CompletionService and composes it;
stages never talk to the provider client directly.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..models import UsageRecord
from ..utils.errors import StructuredOutputError
from ..utils.helpers import extract_json
from .llm_client import LLMClient

logger = logging.getLogger("chapterindex.completion")

T = TypeVar("T", bound=BaseModel)


@dataclass(frozen=True)
class ModelBinding:
    """Models one stage talks to; fallback is None when there is no escalation"""
    primary: str
    fallback: Optional[str] = None


@dataclass
class CompletionResult(Generic[T]):
    output: T
    usage: UsageRecord
    used_fallback: bool


@dataclass
class _Generated:
    output: Any
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


def schema_instruction(schema: Type[BaseModel]) -> str:
    """System prompt suffix describing the expected JSON object"""
    return (
        "Respond with a single JSON object only, no markdown fences, "
        "matching this JSON schema:\n"
        f"{json.dumps(schema.model_json_schema(), ensure_ascii=False)}"
    )


def with_schema_instruction(messages: List[Dict[str, Any]], schema: Type[BaseModel]) -> List[Dict[str, Any]]:
    instruction = schema_instruction(schema)
    messages = list(messages)
    if messages and messages[0]["role"] == "system" and isinstance(messages[0]["content"], str):
        messages[0] = {"role": "system", "content": f"{messages[0]['content']}\n\n{instruction}"}
    else:
        messages.insert(0, {"role": "system", "content": instruction})
    return messages


class CompletionService:
    """
    Primary/fallback execution around LLMClient

    A call tries the primary model; if that fails and the run has not been
    cancelled and a fallback is bound, the fallback model is tried once and
    the usage record is tagged 'fallback'. Replies that do not validate
    against the schema are re-requested up to MAX_STRUCTURED_OUTPUT_RETRIES
    times on the same model before counting as a failure.
    """

    MAX_STRUCTURED_OUTPUT_RETRIES = 3

    def __init__(self, client: LLMClient, cancel_event: Optional[asyncio.Event] = None):
        self.client = client
        self.cancel_event = cancel_event

    async def call(
        self,
        schema: Type[T],
        *,
        system_prompt: str,
        user_prompt: str,
        models: ModelBinding,
        component: str,
        phase: str,
        max_retries: int = 3,
        temperature: float = 0.0,
    ) -> CompletionResult[T]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return await self._execute(schema, messages, models, component, phase, max_retries, temperature)

    async def call_vision(
        self,
        schema: Type[T],
        *,
        messages: List[Dict[str, Any]],
        models: ModelBinding,
        component: str,
        phase: str,
        max_retries: int = 3,
        temperature: float = 0.0,
    ) -> CompletionResult[T]:
        return await self._execute(schema, messages, models, component, phase, max_retries, temperature)

    async def _execute(
        self,
        schema: Type[T],
        messages: List[Dict[str, Any]],
        models: ModelBinding,
        component: str,
        phase: str,
        max_retries: int,
        temperature: float,
    ) -> CompletionResult[T]:
        messages = with_schema_instruction(messages, schema)

        try:
            generated = await self._generate(schema, messages, models.primary, max_retries, temperature)
            return CompletionResult(
                output=generated.output,
                usage=self._build_usage(component, phase, models.primary, generated, False),
                used_fallback=False,
            )
        except Exception as primary_error:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise
            if not models.fallback:
                raise
            logger.warning(
                f"[{component}] Primary model {models.primary} failed ({primary_error}), "
                f"retrying with fallback {models.fallback}"
            )

        generated = await self._generate(schema, messages, models.fallback, max_retries, temperature)
        return CompletionResult(
            output=generated.output,
            usage=self._build_usage(component, phase, models.fallback, generated, True),
            used_fallback=True,
        )

    async def _generate(
        self,
        schema: Type[T],
        messages: List[Dict[str, Any]],
        model: str,
        max_retries: int,
        temperature: float,
    ) -> _Generated:
        totals = _Generated(output=None)
        last_error: Optional[Exception] = None

        for attempt in range(self.MAX_STRUCTURED_OUTPUT_RETRIES + 1):
            response = await self.client.complete(
                messages,
                model=model,
                temperature=temperature,
                max_retries=max_retries,
                json_mode=True,
            )
            totals.input_tokens += response.input_tokens
            totals.output_tokens += response.output_tokens
            totals.total_tokens += response.total_tokens

            data = extract_json(response.content)
            if data is None:
                last_error = StructuredOutputError(f"Reply is not a JSON object: {response.content[:200]!r}")
            else:
                try:
                    totals.output = schema.model_validate(data)
                    return totals
                except ValidationError as e:
                    last_error = e

            logger.debug(
                f"[Completion] Structured output attempt {attempt + 1}/"
                f"{self.MAX_STRUCTURED_OUTPUT_RETRIES + 1} rejected: {last_error}"
            )

        raise StructuredOutputError(
            f"Model {model} did not produce a valid {schema.__name__}: {last_error}"
        ) from last_error

    @staticmethod
    def _build_usage(component: str, phase: str, model_name: str, generated: _Generated,
                     used_fallback: bool) -> UsageRecord:
        return UsageRecord(
            component=component,
            phase=phase,
            model="fallback" if used_fallback else "primary",
            model_name=model_name,
            input_tokens=generated.input_tokens,
            output_tokens=generated.output_tokens,
            total_tokens=generated.total_tokens,
        )
