"""Tool implementations for the LLM agent.

Importing this package ensures all tools are registered with the
:data:`~ledgerbot.tools.registry.default_registry`.
"""

# Import tool modules so their @default_registry.tool decorators execute.
from ledgerbot.tools import queries, transactions, users  # noqa: F401
from ledgerbot.tools.registry import default_registry

__all__ = ["default_registry"]
