"""
acp-relay - capture coding-agent sessions over ACP and replay them as context.
"""

__version__ = "0.1.0"
