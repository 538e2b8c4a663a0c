"""Anthropic Claude adapter."""

from .exploration import Pricing, ToolCallingBackend


class ClaudeBackend(ToolCallingBackend):
    name = "claude"
    model_prefix = "anthropic"
    pricing = Pricing(input_per_1k=0.003, output_per_1k=0.015)
