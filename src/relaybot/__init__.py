"""relaybot - relay an IRC channel into an LLM completion backend."""

__version__ = "0.1.0"
