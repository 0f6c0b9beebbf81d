"""
Core Layer - Configuration, Constants and Prompt Assembly
=========================================================

Provides the configuration and pure context-building logic shared by every
other layer of tokenchat.

Modules:
    constants: Domain constants, token pack catalogue, wire event names and Pydantic settings
    prompts: System prompt texts and the pure model-context builder
"""
