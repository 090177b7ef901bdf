"""
============================================================================
Tradegate Risk Engine
Text Generation Client
============================================================================

Reliability Level: L4 Advisory
Side Effects: HTTP POST {TEXTGEN_URL}/generate

Black-box collaborator: prompt in, structured JSON or free text out.
Its output is never authoritative for a blocking decision.

Request:  {"system": str, "prompt": str, "response_format": "json"}
Response: {"output": <object or str>}   (a bare object is accepted too)

============================================================================
"""

import logging
from typing import Any, Optional

import httpx

from app.infra.http_client import ResilientHttpClient
from services.gate_errors import ExternalServiceError

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_TEXTGEN_TIMEOUT_SECONDS = 60.0


class TextGenerationClient:
    """Client for the text-generation collaborator."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TEXTGEN_TIMEOUT_SECONDS,
        max_retries: int = 2,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._http = ResilientHttpClient(
            base_url=base_url,
            name="textgen",
            timeout=timeout,
            max_retries=max_retries,
            transport=transport,
        )

    def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Any:
        """
        Run one generation.

        Returns:
            Parsed JSON object, or the raw text when the collaborator
            answered in prose

        Raises:
            ExternalServiceError: On any transport or protocol failure (GATE-050)
        """
        response = self._http.request(
            "POST",
            "/generate",
            {"system": system or "", "prompt": prompt, "response_format": "json"},
            correlation_id=correlation_id,
        )
        if not response.success:
            raise ExternalServiceError(
                f"Text generation failed: {response.error_message}",
                details={"transport_error": response.error_code},
            )
        data = response.data
        if isinstance(data, dict) and "output" in data:
            return data["output"]
        return data


__all__ = ["TextGenerationClient", "DEFAULT_TEXTGEN_TIMEOUT_SECONDS"]
