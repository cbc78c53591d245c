"""
Shared Components

Models, configuration, exceptions and logging used by every layer.
"""
