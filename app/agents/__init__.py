"""Agent configuration, prompting and model invocation."""

from . import schemas
from .schemas import AgentConfig

__all__ = ["AgentConfig", "schemas"]
