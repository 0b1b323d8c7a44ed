"""
Configuration package
"""
from claimdocs.config.settings import Settings, get_settings, settings
from claimdocs.config.template_layout import (
    DEFAULT_TEMPLATE_LAYOUT,
    FillableZone,
    ImageBudgets,
    PartsTableLayout,
    TemplateLayout,
)

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    "DEFAULT_TEMPLATE_LAYOUT",
    "FillableZone",
    "ImageBudgets",
    "PartsTableLayout",
    "TemplateLayout",
]
