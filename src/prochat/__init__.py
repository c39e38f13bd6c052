"""pro-chat: a terminal chat client for streaming LLM providers with agentic tool use."""

__version__ = "0.4.0"
