"""
Chat Bridge

Connection engine for a chat client that reaches its server either over a
direct line-based socket or through an HTTP polling relay.
"""

__version__ = "1.0.0"
