"""HTTP session helpers for registry access."""

import json
from typing import Any, Optional

import aiohttp

from .types import RegistryConfig


async def create_session(config: Optional[RegistryConfig] = None) -> aiohttp.ClientSession:
    """Create a client session with registry-friendly timeouts.

    There is no total timeout: layer downloads may legitimately take long,
    only connection setup and individual socket reads are bounded.
    """
    config = config or RegistryConfig()
    timeout = aiohttp.ClientTimeout(
        total=None, sock_connect=config.timeout, sock_read=config.timeout
    )
    return aiohttp.ClientSession(timeout=timeout, raise_for_status=False)


async def parse_json_response(response: aiohttp.ClientResponse) -> Any:
    """Decode a JSON body regardless of the advertised content type.

    Raises:
        ValueError: If the body is not valid JSON
    """
    body = await response.read()
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid JSON response from {response.url}: {e}") from e


def parse_auth_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a WWW-Authenticate header.

    Args:
        header: e.g. 'Bearer realm="https://auth.docker.io/token",service="registry.docker.io"'

    Returns:
        Lowercase scheme and its parameters
    """
    scheme, _, params_str = header.strip().partition(" ")
    params: dict[str, str] = {}
    for item in _split_params(params_str):
        key, sep, value = item.partition("=")
        if sep:
            params[key.strip().lower()] = value.strip().strip('"')
    return scheme.lower(), params


def _split_params(params_str: str) -> list[str]:
    """Split on commas that are not inside quotes (scopes contain commas)."""
    items, current, quoted = [], [], False
    for char in params_str:
        if char == '"':
            quoted = not quoted
        if char == "," and not quoted:
            items.append("".join(current))
            current = []
        else:
            current.append(char)
    if current:
        items.append("".join(current))
    return [item for item in items if item.strip()]
