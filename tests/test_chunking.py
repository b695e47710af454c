import pytest

from mtgate.chunking import chunk_markdown_text


def test_short_text_is_one_chunk() -> None:
    assert chunk_markdown_text("hello", 10) == ["hello"]


def test_empty_text_has_no_chunks() -> None:
    assert chunk_markdown_text("", 10) == []


def test_invalid_limit() -> None:
    with pytest.raises(ValueError):
        chunk_markdown_text("hello", 0)


def test_splits_on_lines_within_limit() -> None:
    text = "\n".join(f"line {i}" for i in range(20))

    chunks = chunk_markdown_text(text, 30)

    assert all(len(chunk) <= 30 for chunk in chunks)
    assert "\n".join(chunks).split("\n") == text.split("\n")


def test_long_line_splits_on_words() -> None:
    text = "word " * 30

    chunks = chunk_markdown_text(text.strip(), 20)

    assert all(len(chunk) <= 20 for chunk in chunks)
    assert " ".join(chunks).split() == text.split()


def test_overlong_word_is_hard_split() -> None:
    chunks = chunk_markdown_text("x" * 25, 10)

    assert chunks == ["x" * 10, "x" * 10, "x" * 5]


def test_code_fence_is_closed_and_reopened() -> None:
    body = "\n".join(f"print({i})" for i in range(10))
    text = f"intro\n```python\n{body}\n```\noutro"

    chunks = chunk_markdown_text(text, 50)

    assert len(chunks) > 1
    assert all(len(chunk) <= 50 for chunk in chunks)
    for chunk in chunks:
        assert chunk.count("```") % 2 == 0
    assert chunks[1].startswith("```python")
