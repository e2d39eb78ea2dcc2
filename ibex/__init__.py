"""Ibex - OpenAI-compatible serving layer for local MLX models."""

__version__ = "0.1.0"
