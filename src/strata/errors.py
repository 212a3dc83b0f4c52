"""Error kinds surfaced by the memory graph."""

from __future__ import annotations


class StrataError(Exception):
    """Base class for all strata errors."""


class NotFound(StrataError):
    """Unknown node/edge/episode/procedure/snapshot id."""

    def __init__(self, kind: str, id: str) -> None:
        super().__init__(f"{kind} not found: {id}")
        self.kind = kind
        self.id = id


class ValidationError(StrataError):
    """Malformed input to a mutation."""


class ProviderError(StrataError):
    """Embedding collaborator failure. Recoverable per item."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"[{provider}] {message}")
        self.provider = provider


class ConfigurationError(StrataError):
    """No usable collaborator could be resolved from configuration."""
