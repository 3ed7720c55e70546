from __future__ import annotations

from dataclasses import dataclass, fields
import logging
from pathlib import Path
import tomllib


logger = logging.getLogger(__name__)

DEFAULT_TARGET = "localhost:23333"
DEFAULT_REQUEST_RATE = "inf"


def _coerce_optional_string(value: object) -> str | None:
    if value is None:
        return None
    parsed = str(value).strip()
    return parsed or None


def format_unknown_options(names: list[str]) -> str:
    return "unknown option(s): " + ", ".join(f"'{name}'" for name in names) + "."


@dataclass(slots=True)
class BenchConfig:
    target: str = DEFAULT_TARGET
    tokenizer: str | None = None
    dataset: str | None = None
    request_rate: str = DEFAULT_REQUEST_RATE
    seed: int | None = None
    limit: int | None = None
    db: str | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "BenchConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(str(key) for key in data if key not in known)
        if unknown:
            raise ValueError(format_unknown_options(unknown))

        request_rate = data.get("request_rate", DEFAULT_REQUEST_RATE)
        return cls(
            target=_coerce_optional_string(data.get("target")) or DEFAULT_TARGET,
            tokenizer=_coerce_optional_string(data.get("tokenizer")),
            dataset=_coerce_optional_string(data.get("dataset")),
            request_rate=str(request_rate).strip() or DEFAULT_REQUEST_RATE,
            seed=int(data["seed"]) if data.get("seed") is not None else None,
            limit=int(data["limit"]) if data.get("limit") is not None else None,
            db=_coerce_optional_string(data.get("db")),
        )

    def merged(self, **overrides: object) -> "BenchConfig":
        """Copy with every non-None override applied on top."""
        values = {item.name: getattr(self, item.name) for item in fields(self)}
        for key, value in overrides.items():
            if key not in values:
                raise ValueError(format_unknown_options([key]))
            if value is not None:
                values[key] = value
        return BenchConfig(**values)


def load_config(config_path: Path) -> BenchConfig:
    """Read the ``[benchmark]`` table of a TOML file."""
    with config_path.open("rb") as handle:
        parsed = tomllib.load(handle)

    unknown_tables = sorted(key for key in parsed if key != "benchmark")
    if unknown_tables:
        raise ValueError(format_unknown_options(unknown_tables))

    section = parsed.get("benchmark", {})
    if not isinstance(section, dict):
        raise ValueError("Top-level 'benchmark' must be a table")
    config = BenchConfig.from_dict(section)
    logger.debug("Loaded config from %s: %s", config_path, config)
    return config
