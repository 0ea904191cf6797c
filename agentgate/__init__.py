"""agentgate: a chat-driven LLM agent gateway."""

__version__ = "0.1.0"
