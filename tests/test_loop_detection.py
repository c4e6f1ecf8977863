"""Tests for the advisory loop detector."""

from __future__ import annotations

from llamacode.ai.events import ContentEvent, LoopDetectedEvent, ToolCallRequest, ToolCallRequestEvent
from llamacode.ai.orchestration.loop_detection import LoopDetector


def _call(name: str = "read_file", **args: object) -> ToolCallRequestEvent:
    return ToolCallRequestEvent(ToolCallRequest(call_id="c", name=name, args=args))


class TestToolCallLoops:
    def test_identical_consecutive_calls_trigger_once(self) -> None:
        detector = LoopDetector(tool_threshold=3)
        detector.reset("prompt_1")

        results = [detector.observe(_call(file_path="a")) for _ in range(5)]

        assert results[:2] == [None, None]
        assert isinstance(results[2], LoopDetectedEvent)
        assert "read_file" in results[2].reason
        assert results[3:] == [None, None]
        assert detector.reported is True

    def test_different_arguments_reset_the_count(self) -> None:
        detector = LoopDetector(tool_threshold=3)
        detector.reset("prompt_1")

        for path in ("a", "a", "b", "b", "a"):
            assert detector.observe(_call(file_path=path)) is None

    def test_argument_order_does_not_matter(self) -> None:
        detector = LoopDetector(tool_threshold=2)
        detector.reset("prompt_1")

        detector.observe(ToolCallRequestEvent(ToolCallRequest("1", "grep", {"a": 1, "b": 2})))
        event = detector.observe(ToolCallRequestEvent(ToolCallRequest("2", "grep", {"b": 2, "a": 1})))

        assert isinstance(event, LoopDetectedEvent)

    def test_reset_starts_a_new_prompt(self) -> None:
        detector = LoopDetector(tool_threshold=2)
        detector.reset("prompt_1")
        detector.observe(_call(file_path="a"))
        assert detector.observe(_call(file_path="a")) is not None

        detector.reset("prompt_2")

        assert detector.reported is False
        assert detector.observe(_call(file_path="a")) is None

    def test_disabled_for_session(self) -> None:
        detector = LoopDetector(tool_threshold=1)
        detector.disable_for_session()
        detector.reset("prompt_1")

        assert detector.disabled is True
        assert detector.observe(_call()) is None


class TestContentLoops:
    def test_repeated_chunks_trigger(self) -> None:
        detector = LoopDetector(content_threshold=3, chunk_size=10)
        detector.reset("prompt_1")

        results = [detector.observe(ContentEvent("all work, ")) for _ in range(3)]

        assert results[:2] == [None, None]
        assert isinstance(results[2], LoopDetectedEvent)

    def test_code_blocks_are_ignored(self) -> None:
        detector = LoopDetector(content_threshold=2, chunk_size=10)
        detector.reset("prompt_1")

        assert detector.observe(ContentEvent("```python")) is None
        assert detector.observe(ContentEvent("\nx = 1 \nx = 1 \nx = 1 \nx = 1 \n" * 3)) is None

    def test_varied_prose_does_not_trigger(self) -> None:
        detector = LoopDetector(content_threshold=2, chunk_size=10)
        detector.reset("prompt_1")

        text = "The quick brown fox jumps over the lazy dog while the cat sleeps soundly."
        assert detector.observe(ContentEvent(text)) is None
