"""
Durable OAuth state for remote tool endpoints.

Each endpoint gets its own directory holding the client registration, the
token pair and the PKCE verifier, each encrypted with Fernet (AES-128-CBC).
The store implements the ``mcp`` SDK's TokenStorage protocol.

Directory structure:
    <auth_store_dir>/.key                        # Encryption key (600 permissions)
    <auth_store_dir>/<endpoint>/client.json      # Encrypted client registration
    <auth_store_dir>/<endpoint>/tokens.json      # Encrypted access/refresh tokens
    <auth_store_dir>/<endpoint>/code_verifier.txt
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from cryptography.fernet import Fernet, InvalidToken
from mcp.shared.auth import OAuthClientInformationFull, OAuthToken
from pydantic import ValidationError

logger = logging.getLogger(__name__)

CLIENT_FILE = "client.json"
TOKENS_FILE = "tokens.json"
CODE_VERIFIER_FILE = "code_verifier.txt"

InvalidationScope = Literal["all", "client", "tokens", "verifier"]


def _get_fernet(key_dir: Path) -> Fernet:
    """Get or create the encryption key."""
    key_dir.mkdir(parents=True, exist_ok=True)
    key_file = key_dir / ".key"

    if key_file.exists():
        key = key_file.read_bytes()
    else:
        key = Fernet.generate_key()
        key_file.write_bytes(key)
        try:
            key_file.chmod(0o600)
        except OSError:
            pass  # Windows doesn't support chmod the same way

    return Fernet(key)


class EndpointCredentialStore:
    """Encrypted per-endpoint OAuth persistence."""

    def __init__(self, endpoint_id: str, base_dir: Path, store_path: Path | None = None):
        """
        Args:
            endpoint_id: Endpoint the credentials belong to
            base_dir: Shared auth directory (holds the key)
            store_path: Override for the endpoint's own directory
        """
        self.endpoint_id = endpoint_id
        self.base_dir = Path(base_dir)
        self.path = Path(store_path) if store_path else self.base_dir / endpoint_id
        self.path.mkdir(parents=True, exist_ok=True)
        self._fernet = _get_fernet(self.base_dir)

    def _read(self, name: str) -> str | None:
        file = self.path / name
        if not file.exists():
            return None
        try:
            return self._fernet.decrypt(file.read_bytes()).decode()
        except InvalidToken:
            logger.warning("[%s] could not decrypt %s, ignoring it", self.endpoint_id, name)
            return None

    def _write(self, name: str, value: str) -> None:
        file = self.path / name
        file.write_bytes(self._fernet.encrypt(value.encode()))
        try:
            file.chmod(0o600)
        except OSError:
            pass

    async def get_tokens(self) -> OAuthToken | None:
        raw = self._read(TOKENS_FILE)
        if raw is None:
            return None
        try:
            return OAuthToken.model_validate_json(raw)
        except ValidationError:
            return None

    async def set_tokens(self, tokens: OAuthToken) -> None:
        self._write(TOKENS_FILE, tokens.model_dump_json(exclude_none=True))
        logger.info("[%s] tokens saved", self.endpoint_id)

    async def get_client_info(self) -> OAuthClientInformationFull | None:
        raw = self._read(CLIENT_FILE)
        if raw is None:
            return None
        try:
            return OAuthClientInformationFull.model_validate_json(raw)
        except ValidationError:
            return None

    async def set_client_info(self, client_info: OAuthClientInformationFull) -> None:
        self._write(CLIENT_FILE, client_info.model_dump_json(exclude_none=True))

    def save_code_verifier(self, verifier: str) -> None:
        self._write(CODE_VERIFIER_FILE, verifier)

    def code_verifier(self) -> str | None:
        return self._read(CODE_VERIFIER_FILE)

    def has_tokens(self) -> bool:
        return (self.path / TOKENS_FILE).exists()

    def invalidate(self, scope: InvalidationScope = "all") -> list[str]:
        """
        Remove persisted state.

        Returns:
            Names of the files that were removed
        """
        targets = {
            "tokens": [TOKENS_FILE],
            "client": [CLIENT_FILE],
            "verifier": [CODE_VERIFIER_FILE],
            "all": [TOKENS_FILE, CLIENT_FILE, CODE_VERIFIER_FILE],
        }
        if scope not in targets:
            raise ValueError(f"Unknown invalidation scope: {scope}")

        removed = []
        for name in targets[scope]:
            file = self.path / name
            if file.exists():
                file.unlink()
                removed.append(name)
        if removed:
            logger.info("[%s] removed %s", self.endpoint_id, ", ".join(removed))
        return removed

    def describe(self) -> dict[str, bool]:
        return {name: (self.path / name).exists() for name in (CLIENT_FILE, TOKENS_FILE, CODE_VERIFIER_FILE)}
