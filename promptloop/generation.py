"""
Text-generation service adapter.

The pipeline talks to a ``GenerationService``; ``GeminiGenerationService`` is
the production implementation on top of the Google GenAI SDK. Every failure,
timeout or empty response is mapped to ``ExternalServiceError``.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Protocol

from google import genai
from google.genai import types

from promptloop.const import EXTERNAL_CALL_TIMEOUT, GEMINI_MODEL
from promptloop.errors import ExternalServiceError
from promptloop.external import call_with_timeout

logger = logging.getLogger("promptloop.generation")


@dataclass
class GenerationResponse:
    """Raw text returned by the service, plus the parsed object when a schema was requested."""

    text: str
    model_id: str
    parsed: Any = None


class GenerationService(Protocol):
    def complete(
        self,
        system_instructions: str,
        user_content: str,
        model_id: str,
        response_schema: Any = None
    ) -> GenerationResponse: ...


class GeminiGenerationService:
    """
    Calls Gemini models through ``google-genai``.

    Args:
        client: An existing ``genai.Client``; built from ``GEMINI_API_KEY`` when omitted
        temperature: Sampling temperature for every request
        timeout: Seconds to wait for a response
    """

    def __init__(self, client: Any = None, temperature: float = 0.2, timeout: float = EXTERNAL_CALL_TIMEOUT) -> None:
        if client is None:
            api_key = os.environ.get("GEMINI_API_KEY")
            if not api_key:
                raise KeyError("GEMINI_API_KEY not found in environment variables.")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.temperature = temperature
        self.timeout = timeout

    def complete(
        self,
        system_instructions: str,
        user_content: str,
        model_id: str = GEMINI_MODEL,
        response_schema: Any = None
    ) -> GenerationResponse:
        config = types.GenerateContentConfig(
            system_instruction=system_instructions,
            temperature=self.temperature,
        )
        if response_schema is not None:
            config.response_mime_type = "application/json"
            config.response_schema = response_schema

        response = call_with_timeout(
            self.client.models.generate_content,
            model=model_id,
            contents=user_content,
            config=config,
            service="generation",
            timeout=self.timeout
        )

        if not response.text:
            logger.error(f"[bold red][GENERATION][/bold red] {model_id} returned an empty response")
            raise ExternalServiceError(f"{model_id} returned an empty response", service="generation")

        parsed = getattr(response, "parsed", None) if response_schema is not None else None
        return GenerationResponse(text=response.text.strip(), model_id=model_id, parsed=parsed)
