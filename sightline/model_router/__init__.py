"""Vision-language inference: provider shapes, tolerant reply parsing, client."""

from .client import InferenceClient, InferenceStats
from .prompts import PromptTemplates
from .providers import get_provider

__all__ = ["InferenceClient", "InferenceStats", "PromptTemplates", "get_provider"]
