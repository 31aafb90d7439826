"""
Dragon chat backend: streaming multi-provider chat with persisted sessions.
"""

__version__ = "0.1.0"
