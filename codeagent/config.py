import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    provider_name: str
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "openai/gpt-4o-mini"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    summary_model: Optional[str] = None

    approval_mode: str = "default"
    max_iterations: int = 40
    compression_threshold: int = 30
    preserve_recent: int = 5
    tool_max_retries: int = 2
    tool_retry_base_delay: float = 0.5
    max_tool_output_chars: int = 30 * 1024

    sync_batch_chars: int = 12000
    sync_batch_files: int = 8
    sync_batch_delay: float = 0.5
    sync_max_retries: int = 3
    max_file_bytes: int = 500 * 1024
    memory_dir_name: str = ".agentmemory"
    global_memory_dir: str = "~/.codeagent"
    workspace_dir: str = "."

    log_level: str = "INFO"
    auth_token: Optional[str] = None
    cors_origins: str = "*"

    service_name: str = "codeagent"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    NOTE: We intentionally *do not* cache environment values that may change
    between tests – `get_settings` below re-creates Settings each time from
    the current environment. This helper only stores defaults.
    """

    return Settings(provider_name="stub")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via monkeypatch, so we must read
    directly from the environment on each call instead of caching.
    """

    base = _base_settings()
    provider_name = (os.getenv("PROVIDER") or base.provider_name).lower()
    approval_mode = (os.getenv("APPROVAL_MODE") or base.approval_mode).lower()

    return Settings(
        provider_name=provider_name,
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL") or base.openai_model,
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        openrouter_model=os.getenv("OPENROUTER_MODEL") or base.openrouter_model,
        gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
        gemini_model=os.getenv("GEMINI_MODEL") or base.gemini_model,
        summary_model=os.getenv("SUMMARY_MODEL") or None,
        approval_mode=approval_mode,
        max_iterations=_env_int("MAX_ITERATIONS", base.max_iterations),
        compression_threshold=_env_int("COMPRESSION_THRESHOLD", base.compression_threshold),
        preserve_recent=_env_int("PRESERVE_RECENT", base.preserve_recent),
        tool_max_retries=_env_int("TOOL_MAX_RETRIES", base.tool_max_retries),
        tool_retry_base_delay=_env_float("TOOL_RETRY_BASE_DELAY", base.tool_retry_base_delay),
        max_tool_output_chars=_env_int("MAX_TOOL_OUTPUT_CHARS", base.max_tool_output_chars),
        sync_batch_chars=_env_int("SYNC_BATCH_CHARS", base.sync_batch_chars),
        sync_batch_files=_env_int("SYNC_BATCH_FILES", base.sync_batch_files),
        sync_batch_delay=_env_float("SYNC_BATCH_DELAY", base.sync_batch_delay),
        sync_max_retries=_env_int("SYNC_MAX_RETRIES", base.sync_max_retries),
        max_file_bytes=base.max_file_bytes,
        memory_dir_name=os.getenv("MEMORY_DIR_NAME") or base.memory_dir_name,
        global_memory_dir=os.getenv("CODEAGENT_HOME") or base.global_memory_dir,
        workspace_dir=os.getenv("WORKSPACE_DIR") or base.workspace_dir,
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        auth_token=os.getenv("AUTH_TOKEN") or None,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        service_name=base.service_name,
        http_port=_env_int("PORT", base.http_port),
    )
