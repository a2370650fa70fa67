from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional


@dataclass(frozen=True)
class ModelInfo:
    id: str
    label: str
    tier: str  # "free" | "paid"

    def to_dict(self) -> dict:
        return asdict(self)


MODELS: tuple[ModelInfo, ...] = (
    ModelInfo("deepseek/deepseek-chat-v3.1:free", "DeepSeek Chat v3.1 (Free)", "free"),
    ModelInfo("google/gemini-2.0-flash-exp:free", "Gemini 2.0 Flash Exp (Free)", "free"),
    ModelInfo("minimax/minimax-m2:free", "Minimax M2 (Free)", "free"),
    ModelInfo("z-ai/glm-4.5-air:free", "GLM 4.5 Air (Free)", "free"),
    ModelInfo("google/gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite (Paid)", "paid"),
    ModelInfo("google/gemini-2.0-flash-lite-001", "Gemini 2.0 Flash Lite 001 (Paid)", "paid"),
    ModelInfo("openai/gpt-5-nano", "GPT-5 Nano (Paid)", "paid"),
)

DEFAULT_MODEL_ID = "deepseek/deepseek-chat-v3.1:free"

_BY_ID = {model.id: model for model in MODELS}


def list_models() -> tuple[ModelInfo, ...]:
    return MODELS


def get_model(model_id: Optional[str]) -> Optional[ModelInfo]:
    if not model_id:
        return None
    return _BY_ID.get(model_id)


def is_known_model(model_id: Optional[str]) -> bool:
    return get_model(model_id) is not None


def is_paid_model(model_id: Optional[str]) -> bool:
    model = get_model(model_id)
    return model is not None and model.tier == "paid"


def is_free_model(model_id: Optional[str]) -> bool:
    model = get_model(model_id)
    return model is not None and model.tier == "free"


def default_model_id() -> str:
    return DEFAULT_MODEL_ID
