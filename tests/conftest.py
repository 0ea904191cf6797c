"""
Pytest fixtures for agentgate tests.
"""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agentgate.core.threads import ThreadStore
from agentgate.core.transport import CollectingTransport
from agentgate.models.chat_config import ChatConfig, ChatParams, GatewayConfig


@pytest.fixture(autouse=True)
def _clean_env():
    """Prevent environment variable pollution between tests."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def _tool_call(name, arguments=None, call_id="call_1"):
    """Tool call in the shape litellm returns."""
    tool_call = MagicMock()
    tool_call.id = call_id
    tool_call.function.name = name
    tool_call.function.arguments = json.dumps(arguments or {})
    return tool_call


def _response(content=None, tool_calls=None):
    """Minimal stand-in for a litellm ModelResponse."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.choices[0].message.tool_calls = tool_calls
    return response


@pytest.fixture
def make_response():
    return _response


@pytest.fixture
def make_tool_call():
    return _tool_call


@pytest.fixture
def chat_config():
    return ChatConfig(
        name="assistant",
        agent_name="assistant",
        system_message="You are a test assistant. Today is {date}.",
        chat_params=ChatParams(debounce_seconds=0),
    )


@pytest.fixture
def gateway_config(chat_config, temp_dir):
    return GatewayConfig(chats=[chat_config], auth_store_dir=str(temp_dir / "auth"))


@pytest.fixture
def threads():
    return ThreadStore()


@pytest.fixture
def transport():
    return CollectingTransport()


@pytest.fixture
def sample_config_yaml():
    return """name: test-gateway
log_level: DEBUG
models:
  - name: fast
    model: openai/gpt-4.1-mini
    api_key_env: FAST_KEY
mcp_servers:
  files:
    command: files-mcp
    args: ["--root", "/tmp"]
chats:
  - name: assistant
    agent_name: assistant
    description: General helper
    model: fast
    tools:
      - forget
      - files
      - agent_name: researcher
        tool_use_behavior: stop_on_first_tool
    evaluators:
      - agent_name: critic
    chat_params:
      confirmation: true
      history_limit: 10
  - name: researcher
    agent_name: researcher
    private_users: ["42"]
  - name: critic
    agent_name: critic
    system_message: Score the answer.
"""
