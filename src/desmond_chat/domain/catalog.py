"""Model catalog: logical model -> backend model, tools and persona."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from .models import ModelId


class Tool(str, Enum):
    GOOGLE_SEARCH = "google_search"
    URL_CONTEXT = "url_context"
    CODE_EXECUTION = "code_execution"
    GOOGLE_MAPS = "google_maps"


class Persona(str, Enum):
    GENERAL = "general"
    MAPS = "maps"


@dataclass(frozen=True)
class ModelSpec:
    """Everything the client needs to know about one logical model."""

    name: str
    description: str
    backend_model: str
    tools: Tuple[Tool, ...]
    persona: Persona = Persona.GENERAL


GENERAL_TOOLS = (Tool.GOOGLE_SEARCH, Tool.URL_CONTEXT, Tool.CODE_EXECUTION)

DEFAULT_MODEL = ModelId.PRO
ESCALATION_MODEL = ModelId.PRO
IMAGE_MODEL = ModelId.IMAGE
# Backend model used for verification, titles and prompt rewriting
UTILITY_MODEL = "gemini-2.5-flash-lite"

MODELS: Dict[ModelId, ModelSpec] = {
    ModelId.PRO: ModelSpec(
        name="Cognitive Core",
        description=(
            "The powerhouse engine for deep analysis and complex problem-solving, "
            "large documents and multi-step reasoning."
        ),
        backend_model="gemini-2.5-pro",
        tools=GENERAL_TOOLS,
    ),
    ModelId.FLASH: ModelSpec(
        name="Dynamic Engine",
        description="A swift, versatile engine for brainstorming, summarization and everyday questions.",
        backend_model="gemini-2.5-flash",
        tools=GENERAL_TOOLS,
    ),
    ModelId.FLASH_LITE: ModelSpec(
        name="Rapid Response",
        description="The lightning-fast engine for instant answers and high-volume tasks.",
        backend_model="gemini-2.5-flash-lite",
        tools=GENERAL_TOOLS,
    ),
    ModelId.MAPS: ModelSpec(
        name="Maps Navigator",
        description=(
            "Location-aware assistant grounded in Google Maps: places, directions, "
            "itineraries and local exploration."
        ),
        backend_model="gemini-2.5-flash-lite",
        tools=(Tool.GOOGLE_MAPS,),
        persona=Persona.MAPS,
    ),
    ModelId.IMAGE: ModelSpec(
        name="Image Generator",
        description="Image generation and editing from text descriptions and input images.",
        backend_model="gemini-2.5-flash-image",
        tools=(),
    ),
}


def resolve(model: ModelId) -> ModelSpec:
    """Look up the settings for a logical model."""
    return MODELS[ModelId(model)]


def coerce_model_id(value) -> ModelId:
    """Map a stored model identifier to a known model, falling back to the default."""
    try:
        return ModelId(value)
    except ValueError:
        return DEFAULT_MODEL
