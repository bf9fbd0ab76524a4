"""DeskFlow: automation workflow engine for service-desk events."""

__version__ = "1.0.0"
