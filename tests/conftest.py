"""Shared test fixtures and configuration."""
import asyncio
import json
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from agents.backends import Extractor
from config import PipelineConfig
from schemas.homework import ExtractionContext, OCRBlock, OCRResult


class FakeExtractor(Extractor):
    """Scripted backend: ``responder(prompt, image_bytes, context)`` returns text or raises."""
    name = "fake"
    model = "fake-model"

    def __init__(self, responder: Callable, available: bool = True, delay: Optional[Callable] = None):
        self.responder = responder
        self.available = available
        self.delay = delay
        self.calls: List[dict] = []
        self.active = 0
        self.max_active = 0

    def is_available(self) -> bool:
        return self.available

    async def extract(self, prompt, image_bytes=None, context: Optional[ExtractionContext] = None, max_tokens=None):
        self.calls.append({"prompt": prompt, "image_bytes": image_bytes, "context": context})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay is not None:
                await asyncio.sleep(self.delay(context))
            return self.responder(prompt, image_bytes, context)
        finally:
            self.active -= 1


def exercise_response(number: str, start_y: float, end_y: float, content: Optional[str] = None, **extra) -> str:
    exercise = {
        "exerciseNumber": number,
        "content": content or f"Exercise {number}",
        "inputType": "text",
        "position": {"startY": start_y, "endY": end_y},
        **extra,
    }
    return json.dumps({"type": "exercises", "subject": "General", "exercises": [exercise]})


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config():
    """Pipeline config with no retry delay."""
    return PipelineConfig(retry_base_delay=0.0)


@pytest.fixture
def five_block_page():
    """Five well-separated exercises at y = 0.05, 0.25, 0.45, 0.65, 0.85."""
    blocks = [OCRBlock(text=f"{i + 1}. Solve problem {i + 1}", y=0.05 + 0.2 * i) for i in range(5)]
    return OCRResult(full_text="\n".join(b.text for b in blocks), blocks=blocks)


@pytest.fixture
def segment_responder():
    """Responder returning one exercise per segment, numbered by segment."""
    def respond(prompt, image_bytes, context):
        segment = context.segment
        return exercise_response(str(segment.index + 1), segment.start_y, segment.end_y)
    return respond
