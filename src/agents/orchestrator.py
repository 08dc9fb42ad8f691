"""Orchestrator - Per-segment extraction pipeline for one homework page.

Pipeline for a page:
    1. Load OCR in top-origin form and segment it (or use one whole-page segment)
    2. Optionally route the page to a subject agent (agentic mode)
    3. Run the agent once per segment with bounded parallelism, each call
       receiving the whole-page text plus the segment's own blocks and crop
    4. Merge successful segment outputs; failed segments are recorded and skipped

Each run owns its own SegmentOrchestrator (semaphore, progress counter and
outcomes), so concurrent runs for different pages share no mutable state.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from agents.aggregator import merge_segment_outputs, ocr_only_result, record_page_result
from agents.backends import Extractor, build_extractor
from agents.errors import (
    AllSegmentsFailed, AnalysisCancelled, HomeworkAnalysisError, InvalidSource, ModelUnavailable,
    SegmentExtractionFailed, TransientExtractionError,
)
from agents.extractors import SubjectAgent
from agents.extractors.base import retry_with_backoff
from agents.router import GENERIC_AGENT, ROUTER_AGENT, build_agent, route_page
from config import PipelineConfig
from preprocessor.rasterize import render_pdf_pages
from schemas.archive import PageAnalysisArchive
from schemas.enums import AnalysisMethod
from schemas.homework import (
    AgentResult, AnalysisMetadata, AnalysisReport, ExtractionContext, ImageSegment, OCRResult,
    SegmentFailure,
)
from segmentation.coordinates import crop_image, decode_image, encode_png, to_top_origin
from segmentation.segmenter import segment_page, whole_page_segment
from telemetry import Telemetry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class CancellationToken:
    """Caller-owned cancel flag, safe to set from any thread."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise AnalysisCancelled("Analysis cancelled by caller")


@dataclass
class SegmentOutcome:
    """Result of one segment call: either an AgentResult or the failure."""
    segment: ImageSegment
    result: Optional[AgentResult] = None
    error: Optional[SegmentExtractionFailed] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.result is not None

    def failure(self) -> SegmentFailure:
        cause = self.error.cause
        return SegmentFailure(
            segment_index=self.segment.index,
            kind=cause.kind,
            message=str(cause),
            raw_excerpt=cause.raw_excerpt,
        )


class SegmentOrchestrator:
    """
    Drives one run's segment calls.

    Progress is reported as (completed, total) after every segment finishes,
    successful or not. Once the token is cancelled no new segment starts,
    in-flight calls are discarded and no further progress is reported.
    """

    def __init__(
        self,
        agent: SubjectAgent,
        config: PipelineConfig,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        telemetry: Optional[Telemetry] = None,
    ):
        self.agent = agent
        self.config = config
        self.progress = progress
        self.cancel_token = cancel_token or CancellationToken()
        self.telemetry = telemetry or Telemetry()
        self.completed = 0
        self.total = 0
        self.outcomes: List[SegmentOutcome] = []
        self._call = retry_with_backoff(config.max_retries, config.retry_base_delay)(agent.run)

    def segment_image(self, page_image: Optional[np.ndarray], segment: ImageSegment) -> Optional[bytes]:
        if page_image is None:
            return None
        if self.total == 1:
            return encode_png(page_image)
        return encode_png(crop_image(page_image, segment.start_y, segment.end_y, self.config.crop_padding))

    async def _process(
        self,
        semaphore: asyncio.Semaphore,
        segment: ImageSegment,
        base_context: ExtractionContext,
        page_image: Optional[np.ndarray],
    ) -> Optional[SegmentOutcome]:
        async with semaphore:
            if self.cancel_token.cancelled:
                return None

            start = time.monotonic()
            context = base_context.model_copy(update={"segment": segment})
            try:
                result = await self._call(context, self.segment_image(page_image, segment))
                outcome = SegmentOutcome(segment, result=result)
                logger.info(
                    f"Segment {segment.index + 1}/{self.total}: "
                    f"{len(result.lessons)} lessons, {len(result.exercises)} exercises"
                )
            except Exception as e:
                cause = e if isinstance(e, HomeworkAnalysisError) else TransientExtractionError(
                    f"{type(e).__name__}: {e}"
                )
                failure = SegmentExtractionFailed(segment.index, cause)
                logger.warning(f"{failure} [{cause.kind.value}]")
                outcome = SegmentOutcome(segment, error=failure)
            outcome.duration = time.monotonic() - start

        self.telemetry.record(f"segment_{segment.index}", outcome.duration, parent="extraction")
        if self.cancel_token.cancelled:
            return None
        self.outcomes.append(outcome)
        self.completed += 1
        if self.progress is not None:
            self.progress(self.completed, self.total)
        return outcome

    async def run(
        self,
        segments: List[ImageSegment],
        base_context: ExtractionContext,
        page_image: Optional[np.ndarray] = None,
    ) -> List[SegmentOutcome]:
        """
        Extract every segment and return outcomes in segment order.

        Raises:
            AnalysisCancelled: If the token was cancelled during the run
            ModelUnavailable: If every segment failed because the backend is unusable
            AllSegmentsFailed: If no segment produced a result
        """
        self.total = len(segments)
        self.completed = 0
        self.outcomes = []
        self.cancel_token.raise_if_cancelled()

        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        await asyncio.gather(*(
            self._process(semaphore, segment, base_context, page_image) for segment in segments
        ))
        self.cancel_token.raise_if_cancelled()

        outcomes = sorted(self.outcomes, key=lambda o: o.segment.index)
        if not any(o.ok for o in outcomes):
            failures = [o.error for o in outcomes]
            if all(isinstance(f.cause, ModelUnavailable) for f in failures):
                raise failures[0].cause
            raise AllSegmentsFailed(failures)
        failed = [o.segment.index for o in outcomes if not o.ok]
        if failed:
            logger.warning(f"{len(failed)}/{self.total} segments failed and were skipped: {failed}")
        return outcomes


def _page_text(ocr: OCRResult) -> str:
    return ocr.full_text or "\n".join(block.text for block in ocr.blocks)


def _ocr_only_report(ocr: OCRResult, additional_context: Optional[str], tel: Telemetry) -> AnalysisReport:
    return AnalysisReport(
        result=ocr_only_result(ocr, additional_context),
        metadata=AnalysisMetadata(method=AnalysisMethod.OCR_ONLY, service_used="ocr", timing=tel.timings()),
    )


async def analyze_page_async(
    ocr: OCRResult,
    image_bytes: Optional[bytes] = None,
    config: Optional[PipelineConfig] = None,
    extractor: Optional[Extractor] = None,
    progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    additional_context: Optional[str] = None,
) -> AnalysisReport:
    """
    Analyze one homework page into an ordered AnalysisResult.

    Args:
        ocr: OCR output for the page (bottom-origin input is flipped here)
        image_bytes: Page image (PNG/JPEG); segment crops are sent to the model
        config: Pipeline configuration (default: PipelineConfig())
        extractor: Model backend (default: built from config)
        progress: Called with (completed, total) after each segment
        cancel_token: Cancel the run from another task or thread
        additional_context: Assignment description prepended to every call

    Returns:
        AnalysisReport with the merged result and run metadata

    Raises:
        InvalidSource: If there is nothing to analyze or the image is unreadable
        ModelUnavailable: If the backend is unusable and OCR-only fallback is off
        AllSegmentsFailed: If every segment call failed
        AnalysisCancelled: If the run was cancelled
    """
    config = config or PipelineConfig()
    extractor = extractor or build_extractor(config)
    tel = Telemetry()

    ocr = to_top_origin(ocr)
    if ocr.is_empty:
        raise InvalidSource("No OCR text or blocks to analyze")
    page_image = decode_image(image_bytes) if image_bytes else None

    if not extractor.is_available():
        if not config.ocr_only_fallback:
            raise ModelUnavailable(f"Extraction backend {extractor.name} is not available")
        logger.warning(f"Backend {extractor.name} unavailable, returning OCR-only result")
        return _ocr_only_report(ocr, additional_context, tel)

    page_text = _page_text(ocr)
    with tel.span("segmentation"):
        if config.agent_scope == "page" or not ocr.blocks:
            segments = [whole_page_segment(ocr.blocks)]
        else:
            segments = segment_page(ocr.blocks, config.gap_threshold, config.min_segment_height)

    routing = None
    agents_invoked = []
    if config.mode == "agentic":
        with tel.span("routing"):
            routing = await route_page(extractor, config, page_text, additional_context)
        agents_invoked.append(ROUTER_AGENT)
        agent = build_agent(routing.agent_used, extractor, config)
    else:
        agent = build_agent(GENERIC_AGENT, extractor, config)
    agents_invoked.append(agent.name)

    base_context = ExtractionContext(
        page_text=page_text,
        page_blocks=ocr.blocks,
        segment_count=len(segments),
        routing=routing,
        additional_context=additional_context,
    )
    orchestrator = SegmentOrchestrator(agent, config, progress, cancel_token, tel)
    logger.info(f"Extracting {len(segments)} segments with {agent.name} via {extractor.name}")
    try:
        with tel.span("extraction"):
            outcomes = await orchestrator.run(segments, base_context, page_image)
    except ModelUnavailable as e:
        if not config.ocr_only_fallback:
            raise
        logger.warning(f"Backend {extractor.name} became unavailable ({e}), returning OCR-only result")
        return _ocr_only_report(ocr, additional_context, tel)

    with tel.span("aggregation"):
        result = merge_segment_outputs(o.result for o in outcomes if o.ok)

    metadata = AnalysisMetadata(
        method=AnalysisMethod.AGENTIC if config.mode == "agentic" else AnalysisMethod.SEGMENTED,
        service_used=extractor.name,
        model=extractor.model,
        agents_invoked=agents_invoked,
        routing=routing,
        segment_count=len(segments),
        failures=[o.failure() for o in outcomes if not o.ok],
        timing=tel.timings(),
    )
    return AnalysisReport(result=result, metadata=metadata)


def analyze_page(
    ocr: OCRResult,
    image_bytes: Optional[bytes] = None,
    config: Optional[PipelineConfig] = None,
    extractor: Optional[Extractor] = None,
    progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    additional_context: Optional[str] = None,
) -> AnalysisReport:
    """Synchronous wrapper around analyze_page_async."""
    return asyncio.run(analyze_page_async(
        ocr, image_bytes, config, extractor, progress, cancel_token, additional_context
    ))


async def analyze_pdf_async(
    pdf_path: Path,
    config: Optional[PipelineConfig] = None,
    extractor: Optional[Extractor] = None,
    pages: Optional[Iterable[int]] = None,
    archive: Optional[PageAnalysisArchive] = None,
    ocr_results: Optional[Dict[int, OCRResult]] = None,
    carry_over_answers: bool = False,
    on_page: Optional[Callable[[int], None]] = None,
    cancel_token: Optional[CancellationToken] = None,
    additional_context: Optional[str] = None,
) -> Tuple[PageAnalysisArchive, Dict[int, HomeworkAnalysisError]]:
    """
    Analyze pages of a PDF one at a time into a page-indexed archive.

    Pages use their native text layer unless ``ocr_results`` supplies OCR for
    that page. A failing page is logged and reported, and never touches the
    archive entries of other pages.

    Returns:
        (archive, failures keyed by page number)
    """
    config = config or PipelineConfig()
    extractor = extractor or build_extractor(config)
    archive = archive if archive is not None else PageAnalysisArchive(source_id=Path(pdf_path).stem)
    ocr_results = ocr_results or {}
    failures: Dict[int, HomeworkAnalysisError] = {}

    for page in render_pdf_pages(Path(pdf_path), pages):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        ocr = ocr_results.get(page.page_number, page.text_layer)
        try:
            if ocr is None or ocr.is_empty:
                raise InvalidSource(f"Page {page.page_number} has no text layer or OCR")
            report = await analyze_page_async(
                ocr, page.image_bytes, config, extractor,
                cancel_token=cancel_token, additional_context=additional_context,
            )
            record_page_result(
                archive, page.page_number, report.result, report.metadata.method, carry_over_answers
            )
            logger.info(f"Page {page.page_number}: {report.result.summary()}")
        except AnalysisCancelled:
            raise
        except HomeworkAnalysisError as e:
            logger.error(f"Page {page.page_number} failed: {e}")
            failures[page.page_number] = e
        if on_page is not None:
            on_page(page.page_number)

    return archive, failures


def analyze_pdf(pdf_path: Path, **kwargs) -> Tuple[PageAnalysisArchive, Dict[int, HomeworkAnalysisError]]:
    """Synchronous wrapper around analyze_pdf_async."""
    return asyncio.run(analyze_pdf_async(pdf_path, **kwargs))
