"""
Encrypted store for LLM provider keys.

Keys live in ~/.agentgate/config/keys.enc, encrypted with a Fernet key
kept next to it, and are exported into the process environment when the
gateway starts so litellm can pick them up.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path

from cryptography.fernet import InvalidToken
from rich.console import Console
from rich.table import Table

from agentgate.core.credentials import _get_fernet

logger = logging.getLogger(__name__)

console = Console()

KNOWN_LLM_KEYS = {
    "OPENAI_API_KEY": "OpenAI",
    "ANTHROPIC_API_KEY": "Anthropic",
    "GOOGLE_API_KEY": "Google (Gemini)",
    "AZURE_API_KEY": "Azure OpenAI",
    "AZURE_API_BASE": "Azure OpenAI endpoint",
    "GROQ_API_KEY": "Groq",
    "MISTRAL_API_KEY": "Mistral AI",
    "OPENROUTER_API_KEY": "OpenRouter",
    "DEEPSEEK_API_KEY": "DeepSeek",
    "OLLAMA_API_BASE": "Ollama (local) base URL",
}

_KEY_NAME_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_ENV_LINE_RE = re.compile(r"^(?:export\s+)?([A-Z_][A-Z0-9_]*)=(.+)$")


class ConfigManager:
    """
    Provider key storage.

    Directory structure:
        ~/.agentgate/config/.key     # Encryption key
        ~/.agentgate/config/keys.enc # Encrypted key/value map
    """

    def __init__(self, base_dir: Path | None = None):
        if base_dir is None:
            base_dir = Path.home() / ".agentgate" / "config"
        self.base_dir = Path(base_dir)
        self._fernet = _get_fernet(self.base_dir)
        self._cache: dict[str, str] | None = None

    @property
    def keys_path(self) -> Path:
        return self.base_dir / "keys.enc"

    def _load_keys(self) -> dict[str, str]:
        if self._cache is not None:
            return self._cache

        if not self.keys_path.exists():
            self._cache = {}
            return self._cache

        try:
            self._cache = json.loads(self._fernet.decrypt(self.keys_path.read_bytes()))
        except (InvalidToken, json.JSONDecodeError):
            logger.warning("Could not decrypt %s, starting with an empty key store", self.keys_path)
            self._cache = {}
        return self._cache

    def _save_keys(self, keys: dict[str, str]) -> None:
        self.keys_path.write_bytes(self._fernet.encrypt(json.dumps(keys).encode()))
        try:
            self.keys_path.chmod(0o600)
        except OSError:
            pass
        self._cache = keys

    def get(self, name: str) -> str | None:
        """Environment first, then the stored value."""
        if name in os.environ:
            return os.environ[name]
        return self._load_keys().get(name)

    def set(self, name: str, value: str) -> None:
        """
        Store a key.

        Raises:
            ValueError: If ``name`` is not an environment-variable style name
        """
        if not _KEY_NAME_RE.match(name):
            raise ValueError(f"Invalid key name: {name!r} (use UPPER_SNAKE_CASE)")
        keys = dict(self._load_keys())
        keys[name] = value
        self._save_keys(keys)

    def delete(self, name: str) -> bool:
        keys = dict(self._load_keys())
        if name not in keys:
            return False
        del keys[name]
        self._save_keys(keys)
        return True

    def list_keys(self) -> list[str]:
        return sorted(self._load_keys())

    def load_into_environment(self) -> int:
        """
        Export stored keys that are not already set.

        Returns:
            Number of keys exported
        """
        loaded = 0
        for name, value in self._load_keys().items():
            if name not in os.environ:
                os.environ[name] = value
                loaded += 1
        if loaded:
            logger.debug("Loaded %d provider key(s) into the environment", loaded)
        return loaded

    def set_from_file(self, file_path: str | Path) -> int:
        """
        Import keys from a .env file (``KEY=value`` lines, ``export`` and quotes allowed).

        Returns:
            Number of keys imported
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        imported = 0
        for line in path.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            match = _ENV_LINE_RE.match(line)
            if not match:
                continue
            name, value = match.groups()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]
            self.set(name, value)
            imported += 1
        return imported

    def show_status(self) -> None:
        keys = self._load_keys()
        if not keys:
            console.print("[dim]No provider keys stored[/dim]")
            console.print("Run [cyan]agentgate config set NAME[/cyan] to add one")
            return

        table = Table(title="Stored provider keys")
        table.add_column("Key", style="cyan")
        table.add_column("Provider")
        table.add_column("Status")
        for name in sorted(keys):
            if name in os.environ and os.environ[name] != keys[name]:
                status = "[yellow]env override[/yellow]"
            else:
                status = "[green]stored[/green]"
            table.add_row(name, KNOWN_LLM_KEYS.get(name, "Custom"), status)

        console.print(table)
        console.print(f"[dim]Location: {self.base_dir}[/dim]")


_config_manager: ConfigManager | None = None


def get_config_manager() -> ConfigManager:
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def load_config() -> int:
    """Export stored provider keys; call once at startup."""
    return get_config_manager().load_into_environment()
