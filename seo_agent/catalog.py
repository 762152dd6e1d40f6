from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional


ToolMode = Literal["native", "emulated", "none"]
Provider = Literal["ollama", "openai", "gemini"]

DEFAULT_MODEL_ID = "llama3.1"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: Provider
    api_identifier: str
    description: str
    tool_mode: ToolMode = "emulated"

    @property
    def supports_tools(self) -> bool:
        return self.tool_mode != "none"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "api_identifier": self.api_identifier,
            "description": self.description,
            "tool_mode": self.tool_mode,
            "supports_tools": self.supports_tools,
        }


MODELS: List[ModelInfo] = [
    ModelInfo("openhermes", "OpenHermes", "ollama", "openhermes", "Fine-tuned model with enhanced function calling capabilities"),
    ModelInfo("mixtral", "Mixtral 8x7B", "ollama", "mixtral", "Most capable model with 47B parameters, excellent for complex tasks"),
    ModelInfo(
        "dolphin-mixtral",
        "Dolphin Mixtral",
        "ollama",
        "dolphin-mixtral",
        "Dolphin-tuned version of Mixtral 47B, optimized for chat and instruction following",
    ),
    ModelInfo(
        "llama3.3",
        "Llama 3.3",
        "ollama",
        "llama3.3",
        "Latest Llama 3 model with 70.6B parameters, excellent for general tasks",
        tool_mode="native",
    ),
    ModelInfo("llama3-gradient", "Llama 3 Gradient", "ollama", "llama3-gradient", "Gradient-tuned Llama 3 8B model for improved performance"),
    ModelInfo(
        "llama3.1",
        "Llama 3.1",
        "ollama",
        "llama3.1",
        "Llama 3.1 with 8B parameters, balanced performance and speed",
        tool_mode="native",
    ),
    ModelInfo("llama3", "Llama 3", "ollama", "llama3", "Base Llama 3 model with 8B parameters"),
    ModelInfo("llama2", "Llama 2", "ollama", "llama2", "Stable and efficient 7B parameter model"),
    ModelInfo("mistral", "Mistral 7B", "ollama", "mistral", "High-performance 7B model with strong reasoning capabilities"),
    ModelInfo("codellama", "Code Llama", "ollama", "codellama", "Specialized 7B model for code generation and understanding"),
    ModelInfo(
        "stable-code",
        "StableCode 3B",
        "ollama",
        "stable-code",
        "Lightweight 3B model optimized for code generation",
        tool_mode="none",
    ),
    ModelInfo(
        "deepseek-coder",
        "DeepSeek Coder",
        "ollama",
        "deepseek-coder",
        "Efficient 1.3B model specialized for coding tasks",
        tool_mode="none",
    ),
    ModelInfo("gpt-4o-mini", "GPT-4o mini", "openai", "gpt-4o-mini", "Hosted OpenAI model with native function calling", tool_mode="native"),
    ModelInfo(
        "gemini-1.5-flash",
        "Gemini 1.5 Flash",
        "gemini",
        "gemini-1.5-flash",
        "Hosted Gemini model with native function calling",
        tool_mode="native",
    ),
]

_BY_ID: Dict[str, ModelInfo] = {m.id: m for m in MODELS}


def _normalize_model_id(value: str) -> str:
    base = value.split(":")[0].strip()
    if "/" in base:
        base = base.rsplit("/", 1)[-1]
    return base.lower()


def resolve_model_id(preferred: Optional[str], available: Optional[List[str]] = None) -> Optional[str]:
    if not preferred:
        return None
    candidates = available if available is not None else list(_BY_ID)
    if preferred in candidates:
        return preferred
    base = preferred.split(":")[0]
    if base in candidates:
        return base
    target = _normalize_model_id(preferred)
    for mid in candidates:
        if _normalize_model_id(mid) == target:
            return mid
    return None


def get_model(model_id: str) -> ModelInfo:
    resolved = resolve_model_id(model_id)
    if resolved is None:
        raise ValueError(f"Model {model_id} not found")
    return _BY_ID[resolved]


def list_models() -> List[ModelInfo]:
    return list(MODELS)
