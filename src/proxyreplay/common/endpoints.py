"""
ProxyReplay Endpoint Utilities

Parsing and resolution of the comma separated ``host:port`` target lists
given on the command line.
"""

import socket
from dataclasses import dataclass
from typing import List, Tuple


class EndpointResolutionError(ValueError):
    """Raised when a target list entry cannot be parsed or resolved."""


@dataclass(frozen=True)
class Endpoint:
    """A resolved network endpoint."""

    address: str
    port: int
    name: str = ""

    @property
    def is_ipv6(self) -> bool:
        return ':' in self.address

    @property
    def netloc(self) -> str:
        """Address and port in URL authority form."""
        if self.is_ipv6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"

    def url(self, scheme: str, path: str = '/') -> str:
        """
        Build a URL on this endpoint for a recorded request target.

        Absolute recorded URLs keep only their path and query so the request
        lands on this endpoint.

        Args:
            scheme: 'http' or 'https'
            path: Recorded request URL or path

        Returns:
            URL string
        """
        if '://' in path:
            path = path.split('://', 1)[1]
            slash = path.find('/')
            path = path[slash:] if slash >= 0 else '/'
        if not path.startswith('/'):
            path = '/' + path
        return f"{scheme}://{self.netloc}{path}"

    def __str__(self) -> str:
        return self.netloc


def split_host_port(text: str) -> Tuple[str, int]:
    """
    Split a ``host:port`` string. IPv6 literals must be bracketed.

    Raises:
        EndpointResolutionError: If the entry has no valid port
    """
    text = text.strip()
    if text.startswith('['):
        host, sep, rest = text[1:].partition(']')
        if not sep or not rest.startswith(':'):
            raise EndpointResolutionError(f'Invalid IPv6 endpoint "{text}"')
        port_text = rest[1:]
    else:
        host, sep, port_text = text.rpartition(':')
        if not sep:
            raise EndpointResolutionError(f'Endpoint "{text}" has no port')

    if not host:
        raise EndpointResolutionError(f'Endpoint "{text}" has no host')
    try:
        port = int(port_text)
    except ValueError:
        raise EndpointResolutionError(f'Endpoint "{text}" has an invalid port "{port_text}"')
    if not 0 < port < 65536:
        raise EndpointResolutionError(f'Endpoint "{text}" port {port} is out of range')
    return host, port


def resolve_endpoints(targets: str) -> List[Endpoint]:
    """
    Resolve a comma separated list of ``host:port`` entries.

    Each entry resolves to the first address returned for it, in list order.

    Args:
        targets: e.g. "127.0.0.1:8080,proxy.local:8081"

    Returns:
        Non-empty list of Endpoint

    Raises:
        EndpointResolutionError: If the list is empty or any entry fails
    """
    endpoints = []
    for entry in targets.split(','):
        if not entry.strip():
            continue
        host, port = split_host_port(entry)
        try:
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise EndpointResolutionError(f'Failed to resolve "{host}": {e}')
        if not infos:
            raise EndpointResolutionError(f'No addresses found for "{host}"')
        address = infos[0][4][0]
        endpoints.append(Endpoint(address=address, port=port, name=host))

    if not endpoints:
        raise EndpointResolutionError(f'No endpoints in "{targets}"')
    return endpoints
