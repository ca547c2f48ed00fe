"""Secrets and endpoints read from the process environment.

``load_environment`` loads ``<base>/.env`` with python-dotenv, then collects
and validates everything the agent needs to reach its collaborators. The
signing key, ledger address, chain RPC URL and stream endpoint are required;
a missing classification key only degrades the classifier.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from urllib.parse import urlsplit, urlunsplit

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from chatsafe.util.logger import get_logger

logger = get_logger("environment")


class StartupError(Exception):
    """Raised when the agent cannot start because of missing or malformed configuration."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


@dataclass(frozen=True)
class AgentEnvironment:
    """Validated secrets and endpoints."""
    private_key: str
    agent_address: str
    contract_address: str
    rpc_url: str
    stream_endpoint: str
    relay_api_url: str
    relay_api_token: str | None = None
    openai_api_key: str | None = None

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks
        return (
            f"AgentEnvironment(agent_address={self.agent_address!r}, "
            f"contract_address={self.contract_address!r}, rpc_url={self.rpc_url!r}, "
            f"stream_endpoint={self.stream_endpoint!r}, relay_api_url={self.relay_api_url!r}, "
            f"classifier_key={'set' if self.openai_api_key else 'unset'})"
        )


def _first(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return None


def derive_relay_api_url(stream_endpoint: str) -> str:
    """Map a ``ws://`` / ``wss://`` stream endpoint to its ``http(s)://`` origin."""
    parts = urlsplit(stream_endpoint)
    scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, "", "", ""))


def read_environment(env: Mapping[str, str]) -> AgentEnvironment:
    """Validate ``env`` and build an :class:`AgentEnvironment`.

    Every problem is collected before raising so the operator can fix the
    whole ``.env`` in one pass.

    Raises:
        StartupError: If any required value is missing or malformed.
    """
    problems: list[str] = []

    private_key = _first(env, "AGENT_PRIVATE_KEY", "XMTP_PRIVATE_KEY")
    agent_address = ""
    if not private_key:
        problems.append("AGENT_PRIVATE_KEY (or XMTP_PRIVATE_KEY) is not set")
    else:
        try:
            agent_address = Account.from_key(private_key).address
        except Exception as exc:
            problems.append(f"AGENT_PRIVATE_KEY is not a valid private key: {exc}")

    contract_address = _first(env, "CHATSAFE_CONTRACT_ADDRESS")
    if not contract_address:
        problems.append("CHATSAFE_CONTRACT_ADDRESS is not set")
    elif not Web3.is_address(contract_address):
        problems.append(f"CHATSAFE_CONTRACT_ADDRESS is not a valid address: {contract_address!r}")
    else:
        contract_address = Web3.to_checksum_address(contract_address)

    rpc_url = _first(env, "CHAIN_RPC_URL", "BASE_SEPOLIA_RPC_URL")
    if not rpc_url:
        problems.append("CHAIN_RPC_URL (or BASE_SEPOLIA_RPC_URL) is not set")

    stream_endpoint = _first(env, "STREAM_ENDPOINT")
    if not stream_endpoint:
        problems.append("STREAM_ENDPOINT is not set")
    elif urlsplit(stream_endpoint).scheme not in ("ws", "wss"):
        problems.append(f"STREAM_ENDPOINT must be a ws:// or wss:// URL: {stream_endpoint!r}")

    if problems:
        raise StartupError(problems)

    relay_api_url = _first(env, "RELAY_API_URL") or derive_relay_api_url(stream_endpoint)
    openai_api_key = _first(env, "OPENAI_API_KEY")
    if not openai_api_key:
        logger.warning("[ENVIRONMENT] OPENAI_API_KEY is not set; classification will run unchecked (fail-open).")

    return AgentEnvironment(
        private_key=private_key,
        agent_address=agent_address,
        contract_address=contract_address,
        rpc_url=rpc_url,
        stream_endpoint=stream_endpoint,
        relay_api_url=relay_api_url.rstrip("/"),
        relay_api_token=_first(env, "RELAY_API_TOKEN"),
        openai_api_key=openai_api_key,
    )


def load_environment(base_dir: Path) -> AgentEnvironment:
    """Load ``base_dir/.env`` into the process environment and validate it.

    Raises:
        StartupError: If any required value is missing or malformed.
    """
    load_dotenv(dotenv_path=base_dir / ".env")
    return read_environment(os.environ)
