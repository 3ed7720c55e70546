from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol


logger = logging.getLogger(__name__)

LITELLM_PREFIX = "litellm:"


class TokenizerLoadError(RuntimeError):
    pass


class TokenizerProtocol(Protocol):
    def encode(self, text: str) -> list[int]:
        ...


class SentencePieceTokenizer:
    def __init__(self, model_path: Path) -> None:
        import sentencepiece

        self.model_path = model_path
        self._processor = sentencepiece.SentencePieceProcessor()
        self._processor.Load(str(model_path))
        logger.info(
            "VOCAB_SIZE: %d; BOS ID: %d; EOS ID: %d; PAD ID: %d",
            self._processor.GetPieceSize(),
            self._processor.bos_id(),
            self._processor.eos_id(),
            self._processor.pad_id(),
        )

    def encode(self, text: str) -> list[int]:
        return list(self._processor.EncodeAsIds(text))


class LiteLLMTokenizer:
    def __init__(self, model: str) -> None:
        if not model:
            raise ValueError("LiteLLM tokenizer requires a model name")
        self.model = model

    @staticmethod
    def _configure_litellm() -> None:
        import litellm

        litellm.suppress_debug_info = True

    def encode(self, text: str) -> list[int]:
        self._configure_litellm()
        from litellm import encode

        return list(encode(model=self.model, text=text))


def load_tokenizer(spec: str) -> TokenizerProtocol:
    """Resolve a tokenizer from a sentencepiece model path or ``litellm:<model>``."""
    value = spec.strip()
    if not value:
        raise TokenizerLoadError("Tokenizer is required")

    if value.startswith(LITELLM_PREFIX):
        model = value[len(LITELLM_PREFIX):].strip()
        try:
            tokenizer = LiteLLMTokenizer(model)
            tokenizer.encode("")
        except Exception as exc:  # noqa: BLE001
            raise TokenizerLoadError(
                f"Failed to load LiteLLM tokenizer {model!r}: {type(exc).__name__}: {exc}"
            ) from exc
        return tokenizer

    model_path = Path(value)
    if not model_path.is_file():
        raise TokenizerLoadError(f"Tokenizer model not found: {model_path}")
    try:
        return SentencePieceTokenizer(model_path)
    except Exception as exc:  # noqa: BLE001
        raise TokenizerLoadError(
            f"Failed to load tokenizer {model_path}: {type(exc).__name__}: {exc}"
        ) from exc
