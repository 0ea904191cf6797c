"""
Chat and gateway configuration models.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "AGENTGATE_CONFIG"
DEFAULT_CONFIG_PATH = "config.yml"
DEFAULT_MODEL = "gpt-4.1-mini"


def sanitize_tool_name(value: str) -> str:
    """Make a string acceptable as a function-calling tool name."""
    cleaned = re.sub(r"[^a-zA-Z0-9_-]+", "_", str(value or "").strip())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    return (cleaned or "tool")[:64]


class CompletionParams(BaseModel):
    """Per-chat (or per-thread) completion overrides."""

    model: str | None = Field(default=None, description="LiteLLM model identifier")
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)


class NamedModel(BaseModel):
    """A model alias that chats can refer to by name."""

    name: str
    model: str = Field(..., description="LiteLLM model identifier (e.g., 'openai/gpt-4.1-mini')")
    api_base: str | None = None
    api_key_env: str | None = Field(default=None, description="Env var holding the provider key")
    fallback_models: list[str] = Field(default_factory=list)


class ChatParams(BaseModel):
    """Behavior switches for a chat."""

    confirmation: bool = Field(default=False, description="Ask before running tools")
    memoryless: bool = Field(default=False, description="Clear history after a turn that used tools")
    history_limit: int = Field(default=20, ge=1, description="Entries kept in the context window")
    forget_timeout: float | None = Field(default=None, gt=0, description="Idle seconds before history resets")
    show_tool_messages: bool = Field(default=True)
    debounce_seconds: float = Field(default=5.0, ge=0)


class AgentToolSpec(BaseModel):
    """Exposes another chat (agent) as a tool."""

    agent_name: str
    name: str | None = None
    description: str | None = None
    tool_use_behavior: Literal["run_llm_again", "stop_on_first_tool"] = "run_llm_again"
    prompt_append: str | None = None

    @property
    def tool_name(self) -> str:
        return sanitize_tool_name(self.name or f"agent_{self.agent_name}")


class EvaluatorSpec(BaseModel):
    """Self-critique pass run after an answer is produced."""

    agent_name: str
    threshold: int = Field(default=4, ge=0, le=5)
    max_iterations: int = Field(default=2, ge=0)


class EndpointAuthConfig(BaseModel):
    """OAuth settings for a network tool endpoint."""

    callback_url: str = Field(default="http://localhost:7586/mcp/callback")
    store_path: str | None = Field(default=None, description="Directory for persisted credentials")
    scopes: list[str] = Field(default_factory=list)
    client_name: str = "agentgate"


class RemoteEndpointConfig(BaseModel):
    """Connection settings for a remote tool endpoint.

    Either ``command`` (local subprocess) or ``url`` (network session
    transport) must be set, never both.
    """

    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    auth: EndpointAuthConfig | None = None
    timeout: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def _check_transport(self) -> "RemoteEndpointConfig":
        if bool(self.command) == bool(self.url):
            raise ValueError("exactly one of 'command' or 'url' must be set")
        return self

    @property
    def transport(self) -> Literal["stdio", "http"]:
        return "stdio" if self.command else "http"

    def fingerprint(self) -> str:
        """Stable hash of the settings used to open a session."""
        payload = json.dumps(self.model_dump(), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode()).hexdigest()


class ChatConfig(BaseModel):
    """One chat (or agent) served by the gateway."""

    name: str = Field(..., min_length=1)
    agent_name: str | None = None
    id: int | str | None = None
    description: str = ""
    system_message: str | None = None
    model: str | None = Field(default=None, description="Alias from the top-level models list")
    completion_params: CompletionParams = Field(default_factory=CompletionParams)
    tools: list[str | AgentToolSpec] = Field(default_factory=list)
    mcp_servers: dict[str, RemoteEndpointConfig] = Field(default_factory=dict)
    evaluators: list[EvaluatorSpec] = Field(default_factory=list)
    chat_params: ChatParams = Field(default_factory=ChatParams)
    private_users: list[str] = Field(default_factory=list)

    def is_allowed(self, user_id: str | int | None) -> bool:
        """Whether a user may use this chat. Empty list means public."""
        if not self.private_users:
            return True
        return user_id is not None and str(user_id) in self.private_users


class HttpConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 7586
    auth_token: str | None = None


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    name: str = "agentgate"
    log_level: str = "INFO"
    models: list[NamedModel] = Field(default_factory=list)
    mcp_servers: dict[str, RemoteEndpointConfig] = Field(default_factory=dict)
    http: HttpConfig = Field(default_factory=HttpConfig)
    auth_store_dir: str = "data/mcp-auth"
    chats: list[ChatConfig] = Field(default_factory=list)

    def get_chat(self, name: str) -> ChatConfig:
        """Look up a chat by name, agent name or id."""
        for chat in self.chats:
            if name in (chat.name, chat.agent_name) or (chat.id is not None and str(chat.id) == str(name)):
                return chat
        raise ChatNotFoundError(name, [c.name for c in self.chats])

    def find_agent(self, agent_name: str) -> ChatConfig | None:
        for chat in self.chats:
            if chat.agent_name == agent_name:
                return chat
        return None

    def get_model(self, name: str) -> NamedModel | None:
        for model in self.models:
            if model.name == name:
                return model
        return None


class ChatNotFoundError(Exception):
    """Raised when a chat or agent name is not configured."""

    def __init__(self, name: str, available: list[str] | None = None):
        self.name = name
        hint = f" Available: {', '.join(available)}" if available else ""
        super().__init__(f"Chat '{name}' not found.{hint}")


class ConfigError(Exception):
    """Raised when the gateway configuration is invalid, with a user-friendly message."""

    def __init__(self, path: str, issues: list[str]):
        self.path = path
        self.issues = issues
        msg = f"Invalid configuration in '{path}':\n" + "\n".join(f"  - {issue}" for issue in issues)
        super().__init__(msg)


def _friendly_validation_errors(path: str, exc: ValidationError) -> ConfigError:
    """Convert Pydantic ValidationError to a user-friendly ConfigError."""
    issues: list[str] = []
    for error in exc.errors():
        loc = ".".join(str(x) for x in error["loc"]) or "(root)"
        err_type = error["type"]
        if err_type == "missing":
            issues.append(f"{loc} is required")
        elif err_type == "literal_error":
            allowed = error.get("ctx", {}).get("expected", "")
            issues.append(f"{loc}: must be one of {allowed}")
        elif err_type == "string_too_short":
            issues.append(f"{loc} cannot be empty")
        else:
            issues.append(f"{loc}: {error['msg']}")
    return ConfigError(path, issues)


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path)
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))


def load_gateway_config(path: str | Path | None = None) -> GatewayConfig:
    """
    Load and validate the gateway configuration from YAML.

    Args:
        path: Config file path (default: $AGENTGATE_CONFIG or ./config.yml)

    Returns:
        Validated GatewayConfig

    Raises:
        ConfigError: If the file is missing or invalid
    """
    config_path = resolve_config_path(path)
    if not config_path.exists():
        raise ConfigError(str(config_path), ["file not found"])

    with open(config_path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(str(config_path), [f"YAML syntax error: {e}"]) from e

    if data is None:
        raise ConfigError(str(config_path), ["YAML file is empty"])

    try:
        config = GatewayConfig(**data)
    except ValidationError as e:
        raise _friendly_validation_errors(str(config_path), e) from e

    logger.debug("Loaded %d chats from %s", len(config.chats), config_path)
    return config
