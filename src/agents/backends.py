"""Extraction backends - the model collaborators behind every agent call.

Two interchangeable backends share the ``Extractor`` contract:
    - AnthropicExtractor: Messages API via the anthropic SDK (image + text)
    - ClaudeCLIExtractor: local ``claude --print`` subprocess (text only)

Backends report a missing/unusable model as ``ModelUnavailable`` and
retryable failures as ``TransientExtractionError`` subclasses, so the
orchestrator can decide between fallback and retry.
"""
import asyncio
import base64
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import anthropic
from anthropic import AsyncAnthropic

from agents.errors import (
    ModelUnavailable, NetworkError, ResponseTruncated, SafetyBlocked, TransientExtractionError,
)
from config import PipelineConfig
from schemas.homework import CloudAnalysisRequest, ExtractionContext, OCRBlock

logger = logging.getLogger(__name__)


def detect_mime_type(image_bytes: bytes) -> str:
    if image_bytes.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def format_ocr_blocks(blocks: Sequence[OCRBlock]) -> str:
    """Render blocks as ``[Y: start-end] text`` lines, top to bottom."""
    return "\n".join(f"[Y: {b.start_y:.3f}-{b.end_y:.3f}] {b.text}" for b in blocks)


def render_prompt(prompt: str, context: Optional[ExtractionContext]) -> str:
    """Append positioned OCR blocks for the call's scope to the prompt."""
    if context is None or not context.blocks:
        return prompt
    return f"{prompt}\n\nOCR Text with Positions (Y: 0.0 = top, 1.0 = bottom):\n{format_ocr_blocks(context.blocks)}"


def build_request(image_bytes: Optional[bytes], context: Optional[ExtractionContext]) -> CloudAnalysisRequest:
    return CloudAnalysisRequest(
        image_base64=base64.standard_b64encode(image_bytes).decode("ascii") if image_bytes else None,
        image_mime_type=detect_mime_type(image_bytes) if image_bytes else "image/png",
        ocr_blocks=list(context.blocks) if context is not None else [],
    )


class Extractor(ABC):
    """Uniform contract for a model call: prompt (+ optional image) in, raw text out."""
    name: str = "extractor"
    model: Optional[str] = None

    @abstractmethod
    async def extract(
        self,
        prompt: str,
        image_bytes: Optional[bytes] = None,
        context: Optional[ExtractionContext] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the model's raw text response."""

    def is_available(self) -> bool:
        return True


class AnthropicExtractor(Extractor):
    """Cloud backend using the Anthropic Messages API."""
    name = "anthropic"

    def __init__(self, config: PipelineConfig, client: Optional[AsyncAnthropic] = None):
        self.config = config
        self.model = config.model
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            # Retries are owned by the orchestrator
            self._client = AsyncAnthropic(timeout=self.config.request_timeout, max_retries=0)
        return self._client

    def is_available(self) -> bool:
        return self._client is not None or bool(
            os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_AUTH_TOKEN")
        )

    def build_content(self, prompt: str, request: CloudAnalysisRequest, context: Optional[ExtractionContext]) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = []
        if request.image_base64:
            content.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": request.image_mime_type,
                    "data": request.image_base64,
                },
            })
        content.append({"type": "text", "text": render_prompt(prompt, context)})
        return content

    async def extract(
        self,
        prompt: str,
        image_bytes: Optional[bytes] = None,
        context: Optional[ExtractionContext] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        request = build_request(image_bytes, context)
        content = self.build_content(prompt, request, context)

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens or self.config.max_tokens,
                temperature=self.config.temperature,
                messages=[{"role": "user", "content": content}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError, anthropic.NotFoundError) as e:
            raise ModelUnavailable(f"Anthropic model {self.model} unavailable: {e}") from e
        except anthropic.APIStatusError as e:
            raise NetworkError(f"Anthropic API error {e.status_code}: {e.message}", status_code=e.status_code) from e
        except anthropic.APIConnectionError as e:
            raise NetworkError(f"Anthropic connection failed: {e}") from e
        except anthropic.APIError as e:
            raise TransientExtractionError(f"Anthropic API error: {e}") from e

        text = "".join(block.text for block in response.content if block.type == "text")
        logger.debug(f"Anthropic response: {len(text)} chars, stop_reason={response.stop_reason}")

        if response.stop_reason == "refusal":
            raise SafetyBlocked("Response blocked by safety filters", text)
        if response.stop_reason == "max_tokens":
            raise ResponseTruncated(f"Response truncated at {max_tokens or self.config.max_tokens} tokens", text)
        return text


class ClaudeCLIExtractor(Extractor):
    """Local backend invoking ``claude --print``. Text-only: images are not sent."""
    name = "claude-cli"

    def __init__(self, config: PipelineConfig, executable: str = "claude"):
        self.config = config
        self.model = config.model
        self.executable = executable

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def invoke(self, prompt: str) -> str:
        """Blocking CLI call; run in a worker thread by ``extract``."""
        cmd = [self.executable, "--print", "--model", self.model, prompt]
        timeout = self.config.request_timeout
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(Path.cwd()),
            )
        except FileNotFoundError as e:
            raise ModelUnavailable(
                "Claude CLI not found. Please install Claude Code: https://claude.ai/download"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise TransientExtractionError(f"Claude CLI timed out after {timeout}s") from e

        if result.returncode != 0:
            error_msg = result.stderr or result.stdout
            raise TransientExtractionError(f"Claude CLI failed (exit {result.returncode}): {error_msg}", error_msg)
        return result.stdout

    async def extract(
        self,
        prompt: str,
        image_bytes: Optional[bytes] = None,
        context: Optional[ExtractionContext] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        if image_bytes:
            logger.debug("Claude CLI backend ignores image input; using OCR text only")
        return await asyncio.to_thread(self.invoke, render_prompt(prompt, context))


def build_extractor(config: PipelineConfig) -> Extractor:
    """Instantiate the backend named by ``config.backend``."""
    if config.backend == "claude-cli":
        return ClaudeCLIExtractor(config)
    return AnthropicExtractor(config)
