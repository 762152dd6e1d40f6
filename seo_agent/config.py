import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

from .agents import ASSISTANT_SYSTEM
from .catalog import DEFAULT_MODEL_ID, ToolMode

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "SEO_AGENT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
MASK = "********"


class OllamaBackendConfig(BaseModel):
    base_url: str = "http://localhost:11434"
    keep_alive: Optional[str] = None


class OpenAIBackendConfig(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None


class GeminiBackendConfig(BaseModel):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key: Optional[str] = None


class AgentConfig(BaseModel):
    max_steps: int = Field(default=25, ge=1)
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    step_timeout_s: float = 120.0
    connect_timeout_s: float = 10.0
    request_timeout_s: float = 60.0
    tool_timeout_s: Optional[float] = 60.0
    system_prompt: str = ASSISTANT_SYSTEM


class AppSettings(BaseModel):
    default_model: str = DEFAULT_MODEL_ID
    # Per-model override of the catalog tool mode.
    tool_modes: Dict[str, ToolMode] = Field(default_factory=dict)
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    ollama: OllamaBackendConfig = Field(default_factory=OllamaBackendConfig)
    openai: OpenAIBackendConfig = Field(default_factory=OpenAIBackendConfig)
    gemini: GeminiBackendConfig = Field(default_factory=GeminiBackendConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for section in ("openai", "gemini"):
            if data.get(section, {}).get("api_key"):
                data[section]["api_key"] = MASK
        return data


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "ollama.base_url": os.getenv("OLLAMA_BASE_URL"),
        "openai.base_url": os.getenv("OPENAI_BASE_URL"),
        "openai.api_key": os.getenv("OPENAI_API_KEY"),
        "gemini.base_url": os.getenv("GEMINI_BASE_URL"),
        "gemini.api_key": os.getenv("GEMINI_API_KEY"),
        "default_model": os.getenv("DEFAULT_MODEL"),
        "agent.max_steps": os.getenv("MAX_STEPS"),
        "agent.step_timeout_s": os.getenv("STEP_TIMEOUT_S"),
        "agent.connect_timeout_s": os.getenv("CONNECT_TIMEOUT_S"),
        "agent.tool_timeout_s": os.getenv("TOOL_TIMEOUT_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "agent.max_steps" in cleaned:
        cleaned["agent.max_steps"] = int(cleaned["agent.max_steps"])
    for key in ("agent.step_timeout_s", "agent.connect_timeout_s", "agent.tool_timeout_s"):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    nested: Dict[str, Any] = {}
    for dotted, value in cleaned.items():
        section, _, field_name = dotted.rpartition(".")
        if section:
            nested.setdefault(section, {})[field_name] = value
        else:
            nested[field_name] = value
    return nested


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(low)
    for key, value in high.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
        if not isinstance(file_data, dict):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge(file_data, env_data)
    else:
        merged = _merge(env_data, file_data)
    for section in ("openai", "gemini"):
        env_key = (env_data.get(section) or {}).get("api_key")
        if env_key and not (merged.get(section) or {}).get("api_key"):
            merged[section] = {**(merged.get(section) or {}), "api_key": env_key}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
