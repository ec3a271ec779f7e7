from __future__ import annotations


class VaultGraphError(Exception):
    pass


class UpstreamServiceError(VaultGraphError, RuntimeError):
    """A network dependency (LLM, embedding service) failed or answered nonsense."""


class LLMError(UpstreamServiceError):
    pass


class EmbeddingError(UpstreamServiceError):
    pass


class ExtractionParseError(VaultGraphError, ValueError):
    pass


class InvalidInput(VaultGraphError, ValueError):
    def __init__(self, index: int, reason: str = "expected a non-empty string"):
        self.index = index
        super().__init__(f"Invalid embedding input at index {index}: {reason}")


class MissingIdentityKey(VaultGraphError, ValueError):
    def __init__(self, node_type: str, key: str):
        self.node_type = node_type
        self.key = key
        super().__init__(f'Missing identity key "{key}" for node type "{node_type}"')


class PartialRestoreFailure(VaultGraphError):
    pass
