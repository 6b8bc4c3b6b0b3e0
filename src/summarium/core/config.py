from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from summarium.core.files import read_text_if_exists


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    data_dir: Path
    db_path: Path


DEFAULT_DATA_DIRNAME = ".summarium"

DEFAULT_PRIMARY_BASE_URL = "https://api.moonshot.ai/v1"
DEFAULT_FALLBACK_BASE_URL = "https://api.moonshot.cn/v1"
DEFAULT_MODEL = "kimi-k2.5"
DEFAULT_PROMPT_VERSION = "deep-dive-v1"

DEFAULT_INSTRUCTION = (
    "Write a comprehensive, structured deep-dive summary of the book provided as SOURCE TEXT. "
    "Start with an executive summary, then cover every chapter in order with its core arguments, "
    "key examples and practical takeaways, and finish with the book's central frameworks and "
    "actionable lessons. Cite page markers where helpful."
)


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("SUMMARIUM_HOME")
    if home_raw:
        data_dir = Path(home_raw).expanduser().resolve()
    else:
        data_dir = root / DEFAULT_DATA_DIRNAME

    return AppPaths(
        project_root=root,
        data_dir=data_dir,
        db_path=data_dir / "summarium.db",
    )


def _read_str_env(*names: str, default: str | None = None) -> str | None:
    for name in names:
        raw = os.getenv(name)
        if raw is not None and raw.strip():
            return raw.strip()
    return default


def _read_clamped_int_env(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


@dataclass(frozen=True)
class PipelineSettings:
    """Tunables for the summary job pipeline, read from the environment."""

    trigger_secret: str | None = None
    api_key: str | None = None
    primary_base_url: str = DEFAULT_PRIMARY_BASE_URL
    fallback_base_url: str = DEFAULT_FALLBACK_BASE_URL
    default_model: str = DEFAULT_MODEL
    instruction: str = DEFAULT_INSTRUCTION
    prompt_version: str = DEFAULT_PROMPT_VERSION
    stale_after_seconds: int = 30 * 60
    max_pages: int = 500
    max_source_chars: int = 1_200_000
    max_output_tokens: int = 7000
    partial_max_chars: int = 18_000
    tail_chars: int = 12_000
    context_limit_tokens: int = 0
    token_safety_margin: int = 2048
    min_output_tokens: int = 800
    http_attempts: int = 3
    download_timeout_seconds: int = 60
    generation_timeout_seconds: int = 12 * 60

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        prompt_path_raw = _read_str_env("SUMMARIUM_PROMPT_PATH")
        instruction = read_text_if_exists(Path(prompt_path_raw).expanduser()) if prompt_path_raw else None
        return cls(
            trigger_secret=_read_str_env("SUMMARIUM_TRIGGER_SECRET"),
            api_key=_read_str_env("MOONSHOT_API_KEY", "KIMI_API_KEY"),
            primary_base_url=_read_str_env("MOONSHOT_BASE_URL", default=DEFAULT_PRIMARY_BASE_URL).rstrip("/"),
            fallback_base_url=_read_str_env(
                "MOONSHOT_FALLBACK_BASE_URL", default=DEFAULT_FALLBACK_BASE_URL
            ).rstrip("/"),
            default_model=_read_str_env("SUMMARIUM_DEFAULT_MODEL", "KIMI_MODEL", default=DEFAULT_MODEL),
            instruction=(instruction or "").strip() or DEFAULT_INSTRUCTION,
            prompt_version=_read_str_env("SUMMARIUM_PROMPT_VERSION", default=DEFAULT_PROMPT_VERSION),
            stale_after_seconds=_read_clamped_int_env("SUMMARIUM_STALE_RUNNING_SECONDS", 30 * 60, 60, 6 * 60 * 60),
            max_pages=_read_clamped_int_env("SUMMARIUM_MAX_PAGES", 500, 1, 5000),
            max_source_chars=_read_clamped_int_env("SUMMARIUM_MAX_SOURCE_CHARS", 1_200_000, 50_000, 2_000_000),
            max_output_tokens=_read_clamped_int_env("SUMMARIUM_MAX_TOKENS", 7000, 800, 20_000),
            partial_max_chars=_read_clamped_int_env("SUMMARIUM_PARTIAL_MAX_CHARS", 18_000, 0, 120_000),
            tail_chars=_read_clamped_int_env("SUMMARIUM_TAIL_CHARS", 12_000, 0, 120_000),
            context_limit_tokens=_read_clamped_int_env("SUMMARIUM_CONTEXT_LIMIT_TOKENS", 0, 0, 2_000_000),
            token_safety_margin=_read_clamped_int_env("SUMMARIUM_TOKEN_MARGIN", 2048, 512, 8192),
            min_output_tokens=_read_clamped_int_env("SUMMARIUM_MIN_OUTPUT_TOKENS", 800, 200, 4000),
            http_attempts=_read_clamped_int_env("SUMMARIUM_HTTP_ATTEMPTS", 3, 1, 10),
            download_timeout_seconds=_read_clamped_int_env("SUMMARIUM_DOWNLOAD_TIMEOUT_SECONDS", 60, 5, 600),
            generation_timeout_seconds=_read_clamped_int_env(
                "SUMMARIUM_GENERATION_TIMEOUT_SECONDS", 12 * 60, 30, 20 * 60
            ),
        )
