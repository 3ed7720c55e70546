from __future__ import annotations

import json
import logging
from pathlib import Path

from coordinator import RunCoordinator
from records import GenerationRequest
from tokenizer_loader import TokenizerProtocol


logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 1.0


class DatasetError(ValueError):
    pass


def _extract_conversation_pair(entry: object, index: int) -> tuple[str, str]:
    if not isinstance(entry, dict):
        raise DatasetError(f"Invalid dataset entry {index}: expected an object")
    conversations = entry.get("conversations")
    if not isinstance(conversations, list) or len(conversations) < 2:
        raise DatasetError(
            f"Invalid dataset entry {index}: 'conversations' needs a prompt and an answer"
        )

    turns: list[str] = []
    for turn in conversations[:2]:
        if not isinstance(turn, dict) or not isinstance(turn.get("value"), str):
            raise DatasetError(
                f"Invalid dataset entry {index}: conversation turns need a string 'value'"
            )
        turns.append(turn["value"])
    return turns[0], turns[1]


def _load_jsonl_pairs(lines: list[str]) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for line_number, raw_line in enumerate(lines, start=1):
        line = raw_line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise DatasetError(f"Invalid JSONL at line {line_number}: {exc.msg}") from exc
        if not isinstance(payload, dict):
            raise DatasetError(
                f"Invalid JSONL at line {line_number}: each row must be an object "
                "with `prompt` and `answer`"
            )
        if "conversations" in payload:
            pairs.append(_extract_conversation_pair(payload, line_number))
            continue

        prompt = payload.get("prompt")
        answer = payload.get("answer")
        if not isinstance(prompt, str) or not isinstance(answer, str):
            raise DatasetError(
                f"Invalid JSONL at line {line_number}: `prompt` and `answer` must be strings"
            )
        pairs.append((prompt, answer))
    return pairs


def load_dataset_pairs(dataset_path: Path) -> list[tuple[str, str]]:
    """Read (prompt, reference answer) pairs in file order.

    ``.jsonl`` files hold one ``{"prompt", "answer"}`` object per line; anything
    else is parsed as a ShareGPT-style JSON array whose first two conversation
    turns are the prompt and the answer.
    """
    try:
        text = dataset_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DatasetError(f"Cannot read dataset {dataset_path}: {exc}") from exc

    if dataset_path.suffix.lower() == ".jsonl":
        return _load_jsonl_pairs(text.splitlines())

    try:
        root = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DatasetError(
            f"Invalid JSON dataset {dataset_path} at line {exc.lineno}: {exc.msg}"
        ) from exc
    if not isinstance(root, list):
        raise DatasetError(f"Dataset {dataset_path} must be a JSON array")

    return [_extract_conversation_pair(entry, index) for index, entry in enumerate(root)]


def build_corpus(
    pairs: list[tuple[str, str]],
    tokenizer: TokenizerProtocol,
    coordinator: RunCoordinator,
    limit: int | None = None,
) -> list[GenerationRequest]:
    if limit is not None and limit < 1:
        raise ValueError("limit must be >= 1")

    selected = pairs if limit is None else pairs[:limit]
    requests: list[GenerationRequest] = []
    for request_id, (prompt, answer) in enumerate(selected):
        prompt_tokens = len(tokenizer.encode(prompt))
        answer_tokens = len(tokenizer.encode(answer))
        request = GenerationRequest(
            request_id=request_id,
            prompt=prompt,
            temperature=DEFAULT_TEMPERATURE,
            generation_length=answer_tokens,
        )
        coordinator.register(request, prompt_tokens=prompt_tokens, output_tokens=answer_tokens)
        requests.append(request)

    logger.info("request size: %d", len(requests))
    return requests
