# vspilot/__init__.py
"""IDE automation core: prioritized task scheduling, build orchestration with AI-assisted repair, and AI provider routing."""

__version__ = "0.1.0"
