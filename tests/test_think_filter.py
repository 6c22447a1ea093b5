import random

import pytest

from tagforge.streaming.think import ThinkingChanged, ThinkTagFilter, VisibleText

TEXT = "Sure.<think>let me reason\nabout this</think> Here are tags: #sun<think>more</think> #sea"
EXPECTED = "Sure. Here are tags: #sun #sea"


def _chunks(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def strip_think_spans(tokens: list[str]) -> str:
    think = ThinkTagFilter()
    out: list[str] = []
    for token in tokens:
        out.extend(s.text for s in think.feed(token) if isinstance(s, VisibleText))
    out.extend(s.text for s in think.flush() if isinstance(s, VisibleText))
    return "".join(out)


@pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 8, 13, len(TEXT)])
def test_fixed_chunkings_remove_think_spans(size):
    assert strip_think_spans(_chunks(TEXT, size)) == EXPECTED


def test_random_chunkings_remove_think_spans():
    rng = random.Random(1234)
    for _ in range(200):
        cuts = sorted(rng.sample(range(1, len(TEXT)), rng.randint(1, 20)))
        tokens = [TEXT[a:b] for a, b in zip([0] + cuts, cuts + [len(TEXT)])]
        assert strip_think_spans(tokens) == EXPECTED


def test_markers_split_across_tokens():
    tokens = ["Hel", "lo <thi", "nk>secret</th", "ink> world"]
    assert strip_think_spans(tokens) == "Hello  world"


def test_thinking_state_changes_are_reported():
    think = ThinkTagFilter()

    segments = think.feed("a<think>b</think>c")

    assert segments == [
        VisibleText("a"),
        ThinkingChanged(True),
        ThinkingChanged(False),
        VisibleText("c"),
    ]
    assert think.thinking is False


def test_unclosed_think_suppresses_rest():
    assert strip_think_spans(["answer<think>never", " closed"]) == "answer"


def test_partial_marker_at_end_is_flushed_as_text():
    think = ThinkTagFilter()

    assert think.feed("x < y <thi") == [VisibleText("x < y ")]
    assert think.flush() == [VisibleText("<thi")]


def test_text_without_markers_passes_through():
    assert strip_think_spans(["plain ", "text"]) == "plain text"
