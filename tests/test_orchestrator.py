"""Tests for the per-segment extraction pipeline."""
import asyncio
import json

import cv2
import numpy as np
import pytest
from agents.errors import (
    AllSegmentsFailed, AnalysisCancelled, InvalidSource, ModelUnavailable, NetworkError,
    TransientExtractionError,
)
from agents.orchestrator import CancellationToken, analyze_page, analyze_page_async
from agents.router import GENERIC_AGENT, ROUTER_AGENT
from config import PipelineConfig
from schemas.enums import AnalysisMethod, ErrorKind, InputType, Subject
from schemas.homework import OCRBlock, OCRResult

from conftest import FakeExtractor, exercise_response


def page_png(height=200, width=40):
    ok, encoded = cv2.imencode(".png", np.full((height, width, 3), 255, dtype=np.uint8))
    assert ok
    return encoded.tobytes()


class TestSegmentedRun:
    def test_failed_segment_is_skipped(self, five_block_page, config, segment_responder):
        def responder(prompt, image, context):
            if context.segment.index == 2:
                raise NetworkError("upstream reset", status_code=502)
            return segment_responder(prompt, image, context)

        progress = []
        report = analyze_page(
            five_block_page, config=config, extractor=FakeExtractor(responder),
            progress=lambda done, total: progress.append((done, total)),
        )

        assert [u.number for u in report.result.exercises] == ["1", "2", "4", "5"]
        assert progress == [(1, 5), (2, 5), (3, 5), (4, 5), (5, 5)]
        assert len(report.metadata.failures) == 1
        failure = report.metadata.failures[0]
        assert failure.segment_index == 2
        assert failure.kind == ErrorKind.NETWORK_ERROR
        assert report.metadata.method == AnalysisMethod.SEGMENTED
        assert report.metadata.segment_count == 5
        assert report.metadata.agents_invoked == [GENERIC_AGENT]
        assert report.metadata.service_used == "fake"

    def test_units_ordered_top_to_bottom(self, five_block_page, config, segment_responder):
        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(segment_responder))
        starts = [u.start_y for u in report.result.exercises]
        assert starts == sorted(starts)
        assert [u.segment_index for u in report.result.exercises] == [0, 1, 2, 3, 4]

    def test_completion_order_does_not_change_result(self, five_block_page, config, segment_responder):
        in_order = analyze_page(five_block_page, config=config, extractor=FakeExtractor(segment_responder))
        reversed_finish = FakeExtractor(segment_responder, delay=lambda ctx: 0.01 * (5 - ctx.segment.index))
        out_of_order = analyze_page(five_block_page, config=config, extractor=reversed_finish)
        assert out_of_order.result == in_order.result

    def test_every_call_gets_whole_page_text(self, five_block_page, config, segment_responder):
        extractor = FakeExtractor(segment_responder)
        analyze_page(five_block_page, config=config, extractor=extractor, additional_context="Unit 2 review")
        assert len(extractor.calls) == 5
        for call in extractor.calls:
            assert "5. Solve problem 5" in call["prompt"]
            assert "Unit 2 review" in call["prompt"]
            assert call["context"].segment_count == 5
            assert len(call["context"].blocks) == 1

    def test_concurrency_is_bounded(self, five_block_page, segment_responder):
        config = PipelineConfig(max_concurrency=2, retry_base_delay=0.0)
        extractor = FakeExtractor(segment_responder, delay=lambda ctx: 0.02)
        analyze_page(five_block_page, config=config, extractor=extractor)
        assert extractor.max_active == 2

    def test_sequential_when_concurrency_is_one(self, five_block_page, segment_responder):
        config = PipelineConfig(max_concurrency=1, retry_base_delay=0.0)
        extractor = FakeExtractor(segment_responder, delay=lambda ctx: 0.01)
        analyze_page(five_block_page, config=config, extractor=extractor)
        assert extractor.max_active == 1
        assert [c["context"].segment.index for c in extractor.calls] == [0, 1, 2, 3, 4]

    def test_transient_error_retried(self, five_block_page, config, segment_responder):
        attempts = {}

        def responder(prompt, image, context):
            index = context.segment.index
            attempts[index] = attempts.get(index, 0) + 1
            if index == 1 and attempts[index] == 1:
                raise TransientExtractionError("overloaded")
            return segment_responder(prompt, image, context)

        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(responder))
        assert attempts[1] == 2
        assert report.metadata.failures == []
        assert len(report.result.exercises) == 5

    def test_unexpected_exception_recorded_as_transient(self, five_block_page, config, segment_responder):
        def responder(prompt, image, context):
            if context.segment.index == 0:
                raise RuntimeError("boom")
            return segment_responder(prompt, image, context)

        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(responder))
        assert [f.kind for f in report.metadata.failures] == [ErrorKind.TRANSIENT]
        assert "boom" in report.metadata.failures[0].message

    def test_unparseable_segment_keeps_excerpt(self, five_block_page, config, segment_responder):
        def responder(prompt, image, context):
            if context.segment.index == 4:
                return "I can't see any exercises here."
            return segment_responder(prompt, image, context)

        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(responder))
        failure = report.metadata.failures[0]
        assert failure.kind == ErrorKind.NO_JSON_STRUCTURE
        assert failure.raw_excerpt == "I can't see any exercises here."

    def test_all_segments_failed(self, five_block_page, config):
        def responder(prompt, image, context):
            raise NetworkError("bad request", status_code=400)

        with pytest.raises(AllSegmentsFailed) as exc_info:
            analyze_page(five_block_page, config=config, extractor=FakeExtractor(responder))
        assert len(exc_info.value.failures) == 5

    def test_duplicate_numbers_renumbered(self, five_block_page, config):
        def responder(prompt, image, context):
            segment = context.segment
            return exercise_response("1", segment.start_y, segment.end_y, f"Problem {segment.index}")

        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(responder))
        assert [u.number for u in report.result.exercises] == ["1", "2", "3", "4", "5"]


class TestImages:
    def test_segments_receive_crops(self, five_block_page, config, segment_responder):
        extractor = FakeExtractor(segment_responder)
        analyze_page(five_block_page, page_png(), config=config, extractor=extractor)
        heights = [
            cv2.imdecode(np.frombuffer(c["image_bytes"], np.uint8), cv2.IMREAD_COLOR).shape[0]
            for c in extractor.calls
        ]
        assert len(heights) == 5
        assert all(0 < h < 200 for h in heights)

    def test_page_scope_sends_full_image_once(self, five_block_page, segment_responder):
        config = PipelineConfig(agent_scope="page", retry_base_delay=0.0)
        extractor = FakeExtractor(segment_responder)
        report = analyze_page(five_block_page, page_png(), config=config, extractor=extractor)
        assert len(extractor.calls) == 1
        image = cv2.imdecode(np.frombuffer(extractor.calls[0]["image_bytes"], np.uint8), cv2.IMREAD_COLOR)
        assert image.shape[0] == 200
        assert report.metadata.segment_count == 1
        assert "segment 1 of" not in extractor.calls[0]["prompt"]

    def test_unreadable_image(self, five_block_page, config, segment_responder):
        with pytest.raises(InvalidSource):
            analyze_page(five_block_page, b"not a png", config=config, extractor=FakeExtractor(segment_responder))


class TestFallbacks:
    def test_empty_page_is_invalid(self, config, segment_responder):
        with pytest.raises(InvalidSource):
            analyze_page(OCRResult(), config=config, extractor=FakeExtractor(segment_responder))

    def test_text_without_blocks_uses_whole_page(self, config):
        extractor = FakeExtractor(lambda prompt, image, ctx: exercise_response("1", 0.0, 1.0))
        report = analyze_page(OCRResult(full_text="1. Write a poem"), config=config, extractor=extractor)
        assert len(extractor.calls) == 1
        assert report.metadata.segment_count == 1

    def test_ocr_only_when_backend_unavailable(self, five_block_page, config, segment_responder):
        extractor = FakeExtractor(segment_responder, available=False)
        report = analyze_page(five_block_page, config=config, extractor=extractor, additional_context="Ch. 1")
        assert extractor.calls == []
        assert report.metadata.method == AnalysisMethod.OCR_ONLY
        (exercise,) = report.result.exercises
        assert exercise.number == "1"
        assert exercise.subject == "General"
        assert exercise.input_type == InputType.TEXT
        assert (exercise.start_y, exercise.end_y) == (0.0, 1.0)
        assert exercise.content.startswith("Ch. 1")
        assert "Solve problem 3" in exercise.content

    def test_model_unavailable_without_fallback(self, five_block_page, segment_responder):
        config = PipelineConfig(ocr_only_fallback=False)
        with pytest.raises(ModelUnavailable):
            analyze_page(five_block_page, config=config, extractor=FakeExtractor(segment_responder, available=False))

    def test_backend_rejected_mid_run_uses_ocr_only(self, five_block_page, config):
        def responder(prompt, image, context):
            raise ModelUnavailable("bad api key")

        extractor = FakeExtractor(responder)
        report = analyze_page(five_block_page, config=config, extractor=extractor)
        assert len(extractor.calls) == 5
        assert report.metadata.method == AnalysisMethod.OCR_ONLY
        (exercise,) = report.result.exercises
        assert "Solve problem 5" in exercise.content

    def test_backend_rejected_mid_run_without_fallback(self, five_block_page):
        def responder(prompt, image, context):
            raise ModelUnavailable("bad api key")

        config = PipelineConfig(ocr_only_fallback=False, retry_base_delay=0.0)
        with pytest.raises(ModelUnavailable, match="bad api key"):
            analyze_page(five_block_page, config=config, extractor=FakeExtractor(responder))

    def test_mixed_failures_still_all_segments_failed(self, five_block_page, config):
        def responder(prompt, image, context):
            if context.segment.index == 0:
                raise NetworkError("bad request", status_code=400)
            raise ModelUnavailable("bad api key")

        with pytest.raises(AllSegmentsFailed):
            analyze_page(five_block_page, config=config, extractor=FakeExtractor(responder))

    def test_bottom_origin_input_flipped(self, config):
        ocr = OCRResult(
            blocks=[OCRBlock(text="1. first", y=0.9), OCRBlock(text="2. second", y=0.1)],
            origin="bottom",
        )
        extractor = FakeExtractor(lambda prompt, image, ctx: exercise_response(
            ctx.segment.ocr_blocks[0].text[0], ctx.segment.start_y, ctx.segment.end_y
        ))
        report = analyze_page(ocr, config=config, extractor=extractor)
        first, second = report.result.exercises
        assert (first.number, second.number) == ("1", "2")
        assert first.start_y < second.start_y


class TestAgenticRun:
    def _responder(self, router_answer):
        def respond(prompt, image, context):
            if context is None:
                return router_answer
            segment = context.segment
            return json.dumps({
                "type": "exercises",
                "exercises": [{
                    "exerciseNumber": str(segment.index + 1),
                    "content": "Solve",
                    "questionLatex": "x^2 = 4",
                    "position": {"startY": segment.start_y, "endY": segment.end_y},
                }],
            })
        return respond

    def test_routed_to_math_agent(self, five_block_page):
        config = PipelineConfig(mode="agentic", retry_base_delay=0.0)
        router_answer = json.dumps({"subject": "Math-Algebra", "contentType": "exercises", "confidence": 0.8})
        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(self._responder(router_answer)))

        metadata = report.metadata
        assert metadata.method == AnalysisMethod.AGENTIC
        assert metadata.agents_invoked == [ROUTER_AGENT, "math_exercise_agent"]
        assert metadata.routing.subject == Subject.MATH
        assert metadata.routing.agent_used == "math_exercise_agent"
        assert all(u.question_latex == "x^2 = 4" for u in report.result.exercises)
        assert all(u.input_type == InputType.MATH_CANVAS for u in report.result.exercises)
        assert "routing" in metadata.timing

    def test_routing_failure_falls_back_to_generic(self, five_block_page):
        config = PipelineConfig(mode="agentic", retry_base_delay=0.0)
        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(self._responder("???")))
        assert report.metadata.routing.fallback
        assert report.metadata.agents_invoked == [ROUTER_AGENT, GENERIC_AGENT]
        assert len(report.result.exercises) == 5

    def test_router_exception_falls_back_to_generic(self, five_block_page):
        config = PipelineConfig(mode="agentic", retry_base_delay=0.0)
        segments = self._responder(None)

        def respond(prompt, image, context):
            if context is None:
                raise RuntimeError("socket closed")
            return segments(prompt, image, context)

        report = analyze_page(five_block_page, config=config, extractor=FakeExtractor(respond))
        assert report.metadata.routing.fallback
        assert report.metadata.routing.agent_used == GENERIC_AGENT
        assert [u.number for u in report.result.exercises] == ["1", "2", "3", "4", "5"]


class TestCancellation:
    def test_cancel_before_start(self, five_block_page, config, segment_responder):
        token = CancellationToken()
        token.cancel()
        extractor = FakeExtractor(segment_responder)
        with pytest.raises(AnalysisCancelled):
            analyze_page(five_block_page, config=config, extractor=extractor, cancel_token=token)
        assert extractor.calls == []

    def test_cancel_mid_run_stops_progress(self, five_block_page, segment_responder):
        config = PipelineConfig(max_concurrency=1, retry_base_delay=0.0)
        token = CancellationToken()
        progress = []

        def responder(prompt, image, context):
            if context.segment.index == 1:
                token.cancel()
            return segment_responder(prompt, image, context)

        extractor = FakeExtractor(responder)
        with pytest.raises(AnalysisCancelled):
            analyze_page(
                five_block_page, config=config, extractor=extractor, cancel_token=token,
                progress=lambda done, total: progress.append((done, total)),
            )
        assert progress == [(1, 5)]
        assert len(extractor.calls) == 2

    def test_concurrent_runs_are_independent(self, five_block_page, config, segment_responder):
        async def both():
            return await asyncio.gather(
                analyze_page_async(five_block_page, config=config, extractor=FakeExtractor(segment_responder)),
                analyze_page_async(
                    OCRResult(blocks=[OCRBlock(text="1. only", y=0.5)]),
                    config=config,
                    extractor=FakeExtractor(segment_responder),
                ),
            )

        first, second = asyncio.run(both())
        assert len(first.result.exercises) == 5
        assert len(second.result.exercises) == 1
