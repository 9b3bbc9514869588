"""
Language registry and starter templates.
"""

from .registry import (
    ALIASES,
    LANGUAGES,
    LanguageDescriptor,
    LocalRecipe,
    ResourceLimits,
    get_language,
    list_languages,
    render_command,
    render_token,
    runnable_languages,
    token_mapping,
)
from .templates import available_templates, get_template

__all__ = [
    "ALIASES",
    "LANGUAGES",
    "LanguageDescriptor",
    "LocalRecipe",
    "ResourceLimits",
    "available_templates",
    "get_language",
    "get_template",
    "list_languages",
    "render_command",
    "render_token",
    "runnable_languages",
    "token_mapping",
]
