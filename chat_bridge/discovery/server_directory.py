"""
Server Directory

Fetches the list of available chat servers from the HTTP discovery service.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional

import requests

from chat_bridge.shared.constants import (
    DEFAULT_DISCOVERY_TIMEOUT,
    DEFAULT_DISCOVERY_URL,
    DISCOVERY_ENDPOINT,
    HTTP_OK_STATUS,
)
from chat_bridge.shared.exceptions import ParseError, ProtocolError, ServiceDiscoveryError, ValidationError
from chat_bridge.shared.models import ServerDescriptor
from chat_bridge.shared.protocols import ServerDirectory


logger = logging.getLogger(__name__)


@dataclass
class DiscoveryConfig:
    """Configuration for server discovery."""
    discovery_url: str = DEFAULT_DISCOVERY_URL
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT

    def __post_init__(self) -> None:
        self.discovery_url = self.discovery_url.rstrip("/")


def parse_server_list(text: Optional[str]) -> List[ServerDescriptor]:
    """
    Parse a discovery response body into server descriptors.

    Invalid entries are skipped with a warning; they never fail the whole list.

    Args:
        text: Raw response body.

    Returns:
        Valid descriptors in response order.

    Raises:
        ParseError: If the body is not a JSON array.
    """
    if text is None or not text.strip():
        logger.warning("Discovery response is empty")
        return []

    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as e:
        raise ParseError(f"Invalid server list JSON: {e}", payload=text) from e

    if not isinstance(data, list):
        raise ParseError("Server list is not a JSON array", payload=text)

    servers = []
    for entry in data:
        try:
            servers.append(ServerDescriptor.from_dict(entry))
        except ValidationError as e:
            logger.warning(f"Skipping server entry ({e}): {entry!r}")
    return servers


class DiscoveryClient(ServerDirectory):
    """Client for the discovery service's server list endpoint."""

    def __init__(self, config: Optional[DiscoveryConfig] = None,
                 session: Optional[requests.Session] = None) -> None:
        """
        Initialize the discovery client.

        Args:
            config: Discovery configuration.
            session: HTTP session to use. A private one is created if omitted.
        """
        self.config = config or DiscoveryConfig()
        self._session = session or requests.Session()

    def fetch_servers(self) -> List[ServerDescriptor]:
        """
        Fetch and parse the current server list.

        Returns:
            Valid server descriptors.

        Raises:
            ServiceDiscoveryError: If the discovery service cannot be reached.
            ProtocolError: If it answers with a non-success status.
            ParseError: If the body is not a JSON array.
        """
        url = f"{self.config.discovery_url}/{DISCOVERY_ENDPOINT}"
        try:
            response = self._session.get(url, timeout=self.config.timeout)
        except requests.exceptions.RequestException as e:
            raise ServiceDiscoveryError(f"Error connecting to discovery service: {e}") from e

        if response.status_code != HTTP_OK_STATUS:
            raise ProtocolError(
                f"Error fetching server list (status {response.status_code})",
                status_code=response.status_code,
                body=response.text,
            )

        servers = parse_server_list(response.text)
        logger.info(f"Discovery returned {len(servers)} valid server(s)")
        return servers
