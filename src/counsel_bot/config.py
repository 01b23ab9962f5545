# counsel_bot/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from uuid import uuid4

from dotenv import load_dotenv

load_dotenv()

# -------- Paths --------
PACKAGE_DIR = Path(__file__).resolve().parent
PROMPTS_DIR = Path(os.getenv("PROMPTS_DIR", PACKAGE_DIR / "prompts"))
KEYWORDS_DIR = Path(os.getenv("KEYWORDS_DIR", PACKAGE_DIR / "keywords"))

# -------- AWS / model config --------
AWS_REGION = os.getenv("AWS_REGION", "us-west-2")
AWS_PROFILE = os.getenv("AWS_PROFILE")  # optional named profile
LOW_TIER_MODEL_ID = os.getenv(
    "BEDROCK_LOW_TIER_MODEL_ID",
    "anthropic.claude-3-haiku-20240307-v1:0",
)
HIGH_TIER_MODEL_ID = os.getenv(
    "BEDROCK_HIGH_TIER_MODEL_ID",
    "anthropic.claude-3-5-sonnet-20240620-v1:0",
)

# -------- Thread / session config --------
DEFAULT_THREAD_ID = os.getenv("THREAD_ID", f"cli-{uuid4().hex[:8]}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class GenerationSettings:
    """Knobs for the remote text-generation calls."""

    region: str = AWS_REGION
    profile: Optional[str] = AWS_PROFILE
    low_tier_model_id: str = LOW_TIER_MODEL_ID
    high_tier_model_id: str = HIGH_TIER_MODEL_ID
    max_retries: int = 3
    timeout_s: float = 30.0
    backoff_base_s: float = 1.0
    circuit_failure_threshold: int = 5
    circuit_reset_s: float = 60.0
    low_tier_temperature: float = 0.9
    high_tier_temperature: float = 0.7
    low_tier_max_tokens: int = 1000
    high_tier_max_tokens: int = 2000


@dataclass
class OrchestratorSettings:
    """Timeouts, cooldowns and caps for the per-turn pipeline."""

    background_enabled: bool = True
    max_background_tasks: int = 2
    background_task_timeout_s: float = 300.0
    sweep_interval_s: float = 60.0
    stall_timeout_s: float = 180.0
    short_wait_window_s: float = 20.0
    early_turn_threshold: int = 5
    substantive_turn_min_chars: int = 20
    early_analysis_cooldown_s: float = 120.0
    analysis_cooldown_s: float = 600.0
    history_limit: int = 100
    risk_window: int = 5
    risk_factor_threshold: int = 3
    risk_max_drop: int = 1


@dataclass
class Settings:
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    log_level: str = "INFO"
    log_json: bool = False
    thread_id: str = DEFAULT_THREAD_ID


def load_settings() -> Settings:
    """Build Settings from the environment (.env already loaded at import)."""
    generation = GenerationSettings(
        max_retries=_env_int("LLM_MAX_RETRIES", 3),
        timeout_s=_env_float("LLM_TIMEOUT_S", 30.0),
        backoff_base_s=_env_float("LLM_BACKOFF_BASE_S", 1.0),
        circuit_failure_threshold=_env_int("LLM_CIRCUIT_FAILURE_THRESHOLD", 5),
        circuit_reset_s=_env_float("LLM_CIRCUIT_RESET_S", 60.0),
        low_tier_temperature=_env_float("LLM_LOW_TIER_TEMPERATURE", 0.9),
        high_tier_temperature=_env_float("LLM_HIGH_TIER_TEMPERATURE", 0.7),
        low_tier_max_tokens=_env_int("LLM_LOW_TIER_MAX_TOKENS", 1000),
        high_tier_max_tokens=_env_int("LLM_HIGH_TIER_MAX_TOKENS", 2000),
    )
    orchestrator = OrchestratorSettings(
        background_enabled=_env_bool("ENABLE_BACKGROUND_PROCESSING", True),
        max_background_tasks=_env_int("MAX_BACKGROUND_TASKS", 2),
        background_task_timeout_s=_env_float("BACKGROUND_TASK_TIMEOUT_S", 300.0),
        sweep_interval_s=_env_float("TASK_SWEEP_INTERVAL_S", 60.0),
        stall_timeout_s=_env_float("ANALYSIS_STALL_TIMEOUT_S", 180.0),
        short_wait_window_s=_env_float("SHORT_WAIT_WINDOW_S", 20.0),
        early_turn_threshold=_env_int("EARLY_TURN_THRESHOLD", 5),
        substantive_turn_min_chars=_env_int("SUBSTANTIVE_TURN_MIN_CHARS", 20),
        early_analysis_cooldown_s=_env_float("EARLY_ANALYSIS_COOLDOWN_S", 120.0),
        analysis_cooldown_s=_env_float("ANALYSIS_COOLDOWN_S", 600.0),
        history_limit=_env_int("HISTORY_LIMIT", 100),
        risk_window=_env_int("RISK_WINDOW", 5),
        risk_factor_threshold=_env_int("RISK_FACTOR_THRESHOLD", 3),
        risk_max_drop=_env_int("RISK_MAX_DROP", 1),
    )
    return Settings(
        generation=generation,
        orchestrator=orchestrator,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        log_json=_env_bool("LOG_JSON", False),
        thread_id=DEFAULT_THREAD_ID,
    )
