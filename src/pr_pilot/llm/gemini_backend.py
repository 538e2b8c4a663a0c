"""Google Gemini adapter."""

from .exploration import Pricing, ToolCallingBackend


class GeminiBackend(ToolCallingBackend):
    name = "gemini"
    model_prefix = "gemini"
    pricing = Pricing(input_per_1k=0.00125, output_per_1k=0.005)
