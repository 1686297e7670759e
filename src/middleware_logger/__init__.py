"""Transparent proxy that turns relayed LLM traffic into a readable conversation."""

__version__ = "0.1.0"
