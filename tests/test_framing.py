from __future__ import annotations

import pytest

from switchboard_mcp.generation import ConversationHistory, HeuristicBoundaryDetector, is_context_limit


@pytest.mark.parametrize(
    "text",
    [
        "Error: TOKEN LIMIT reached",
        "the conversation too long to continue",
        "Maximum Context length exceeded",
        "context window is full",
    ],
)
def test_context_limit_detected_case_insensitively(text: str) -> None:
    assert is_context_limit(text)


def test_ordinary_text_is_not_a_context_limit() -> None:
    assert not is_context_limit("Here is the recipe you asked for.")


def test_boundary_detector_rules() -> None:
    detector = HeuristicBoundaryDetector()

    assert not detector.is_complete("partial answer", "partial answer")
    assert detector.is_complete(" answer\n", "partial answer\n")
    assert detector.is_complete("para one\n\npara", "para one\n\npara")
    assert detector.is_complete("done\n> ", "done\n> ")
    # Whitespace alone never completes a response.
    assert not detector.is_complete("\n", "\n")


def test_history_is_bounded_and_renders_recent_entries() -> None:
    history = ConversationHistory(limit=10)
    for index in range(8):
        history.append_exchange(f"question {index}", f"answer {index}")

    assert len(history) == 10
    entries = list(history)
    assert entries[0].content == "question 3"
    assert entries[-1].content == "answer 7"
    assert history.render(2) == "User: question 7\nAssistant: answer 7"
    assert history.recent(0) == []

    history.clear()
    assert len(history) == 0
    assert history.render() == ""


def test_history_rejects_zero_limit() -> None:
    with pytest.raises(ValueError):
        ConversationHistory(limit=0)
