"""AURA Beacon: a seller-side agent for the AURA agentic-commerce protocol."""

__version__ = "0.1.0"
