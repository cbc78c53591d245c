"""
Service Discovery Package

Provides the HTTP discovery client for finding chat servers.
"""

from .server_directory import DiscoveryClient, DiscoveryConfig, parse_server_list

__all__ = ["DiscoveryClient", "DiscoveryConfig", "parse_server_list"]
