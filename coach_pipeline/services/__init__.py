
from .anthropic_client import AnthropicStreamingClient, GenerationChunk, GenerationError
from .classifier_client import ClassifierClient, extract_json_object
from .cost import calculate_cost

__all__ = [
    "AnthropicStreamingClient",
    "ClassifierClient",
    "GenerationChunk",
    "GenerationError",
    "calculate_cost",
    "extract_json_object",
]
