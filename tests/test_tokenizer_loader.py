from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from tokenizer_loader import LiteLLMTokenizer, TokenizerLoadError, load_tokenizer


def test_missing_model_file_is_a_load_error(tmp_path: Path) -> None:
    with pytest.raises(TokenizerLoadError, match="not found"):
        load_tokenizer(str(tmp_path / "tokenizer.model"))


def test_corrupt_model_file_is_a_load_error(tmp_path: Path) -> None:
    model_path = tmp_path / "tokenizer.model"
    model_path.write_bytes(b"not a sentencepiece model")
    with pytest.raises(TokenizerLoadError, match="Failed to load tokenizer"):
        load_tokenizer(str(model_path))


def test_empty_spec_is_rejected() -> None:
    with pytest.raises(TokenizerLoadError):
        load_tokenizer("  ")


def test_litellm_tokenizer_uses_litellm_encode(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, str]] = []

    def _fake_encode(model: str, text: str) -> list[int]:
        calls.append((model, text))
        return list(range(len(text.split())))

    monkeypatch.setattr("litellm.encode", _fake_encode)

    tokenizer = load_tokenizer("litellm:gpt-4o-mini")

    assert isinstance(tokenizer, LiteLLMTokenizer)
    assert tokenizer.encode("one two three") == [0, 1, 2]
    assert calls[-1] == ("gpt-4o-mini", "one two three")


def test_litellm_tokenizer_load_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise_encode(model: str, text: str) -> list[int]:
        raise RuntimeError("unknown model")

    monkeypatch.setattr("litellm.encode", _raise_encode)

    with pytest.raises(TokenizerLoadError, match="unknown model"):
        load_tokenizer("litellm:not-a-model")
