"""Prompt building and edit dispatching utilities."""

from .edit_ops import EditOperationDispatcher
from .prompt_builder import PromptBuilder, StylePromptContext

__all__ = ["EditOperationDispatcher", "PromptBuilder", "StylePromptContext"]
