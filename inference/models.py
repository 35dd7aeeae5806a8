"""Wire models for the Ollama-compatible inference API and the model catalogue."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Message(BaseModel):
    role: str
    content: str = ""


class ChatRequest(BaseModel):
    model: str
    messages: List[Message]
    stream: bool = False


class ChatResponse(BaseModel):
    """Completed chat response; also the aggregate returned after streaming."""

    model: str = ""
    created_at: Optional[str] = None
    message: Message = Field(default_factory=lambda: Message(role="assistant"))
    done: bool = False
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0

    @property
    def content(self) -> str:
        return self.message.content


class StreamChunk(ChatResponse):
    """One newline-delimited JSON object of a streamed chat response."""


class EmbeddingRequest(BaseModel):
    model: str
    prompt: str


class EmbeddingResponse(BaseModel):
    embedding: List[float] = Field(default_factory=list)


class ModelEntry(BaseModel):
    name: str


class ModelsResponse(BaseModel):
    models: List[ModelEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Model catalogue
# ---------------------------------------------------------------------------

class ModelCapability(str, Enum):
    CHAT = "chat"
    CODE = "code"
    EMBEDDING = "embedding"
    REASONING = "reasoning"
    TRANSLATION = "translation"
    CREATIVE = "creative"
    RAG = "rag"


class ModelConfig(BaseModel):
    name: str
    capabilities: List[ModelCapability]
    priority: int = Field(description="Higher number = higher priority")
    description: str = ""


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "gemma3:4b": ModelConfig(
        name="gemma3:4b",
        capabilities=[ModelCapability.CHAT, ModelCapability.CODE, ModelCapability.REASONING, ModelCapability.CREATIVE],
        priority=95,
        description="Gemma 3 4B - coding, reasoning and creative tasks",
    ),
    "llama3.1:8b": ModelConfig(
        name="llama3.1:8b",
        capabilities=[ModelCapability.CHAT, ModelCapability.CREATIVE, ModelCapability.REASONING],
        priority=80,
        description="Llama 3.1 8B - general-purpose",
    ),
    "llama3.2:3b": ModelConfig(
        name="llama3.2:3b",
        capabilities=[ModelCapability.CHAT, ModelCapability.CREATIVE],
        priority=70,
        description="Llama 3.2 3B - lightweight general-purpose",
    ),
    "embeddinggemma:latest": ModelConfig(
        name="embeddinggemma:latest",
        capabilities=[ModelCapability.EMBEDDING],
        priority=90,
        description="Gemma embedding model",
    ),
}

# Smaller models answer RAG prompts with lower latency
RAG_FAST_MODELS = ["llama3.2:1b", "gemma2:2b", "qwen2.5:1.5b", "llama3.2:3b"]


def get_model_info(name: str) -> Optional[ModelConfig]:
    """Catalogue entry for a model name, matching variants by substring."""
    if name in MODEL_CONFIGS:
        return MODEL_CONFIGS[name]
    lowered = name.lower()
    for config_name, config in MODEL_CONFIGS.items():
        if config_name.lower() in lowered:
            return config
    return None


def select_model(available: list[str], capability: ModelCapability = ModelCapability.CHAT) -> str:
    """Pick the best available model for a capability.

    RAG prefers the small fast models, then falls back to chat. Otherwise the
    highest-priority catalogue entry with the capability wins; models missing
    from the catalogue are chosen by name (``embed`` for embeddings, ``gemma3``
    then any non-embedding model for everything else). Returns ``""`` when
    nothing is available.
    """
    if not available:
        return ""
    capability = ModelCapability(capability)

    if capability == ModelCapability.RAG:
        for fast in RAG_FAST_MODELS:
            for model in available:
                if fast in model.lower():
                    return model
        capability = ModelCapability.CHAT

    best_model, best_priority = "", -1
    for model in available:
        lowered = model.lower()
        for config_name, config in MODEL_CONFIGS.items():
            name = config_name.lower()
            if lowered != name and name not in lowered and lowered not in name:
                continue
            if capability in config.capabilities and config.priority > best_priority:
                best_model, best_priority = model, config.priority
    if best_model:
        return best_model

    if capability == ModelCapability.EMBEDDING:
        for model in available:
            if "embed" in model.lower():
                return model
    else:
        for model in available:
            if "gemma3" in model.lower():
                return model
        for model in available:
            if "embed" not in model.lower():
                return model
    return available[0]
