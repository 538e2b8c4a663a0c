"""OpenAI adapter."""

from .exploration import Pricing, ToolCallingBackend


class OpenAIBackend(ToolCallingBackend):
    name = "openai"
    model_prefix = "openai"
    pricing = Pricing(input_per_1k=0.0025, output_per_1k=0.01)
    # One call per turn keeps tool results in the order they were requested.
    completion_kwargs = {"parallel_tool_calls": False}
