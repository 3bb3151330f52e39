"""Ollama integration module.

This module provides integration with the local Ollama LLM service.
"""

from .client import OllamaClient

__all__ = ["OllamaClient"]
