"""
Error types shared across the generation pipeline.

Fallback-worthy failures (provider, parse) are recovered locally by the
component that calls the provider; configuration and lookup failures are
fatal and surface to the caller before any work starts.
"""


class StoryloomError(Exception):
    pass


class ConfigurationError(StoryloomError):
    """The application is missing a required setting."""


class ProviderError(StoryloomError):
    """An embedding or completion call failed."""


class ProviderNotConfiguredError(ConfigurationError, ProviderError):
    """No completion/embedding provider credentials are available."""


class ProviderTimeout(ProviderError):
    pass


class EmbeddingDimensionError(ProviderError, ValueError):
    def __init__(self, left: int, right: int):
        super().__init__(f"embedding dimension mismatch: {left} != {right}")
        self.left = left
        self.right = right


class ParseError(StoryloomError):
    """Model output did not match the expected structured shape."""


class SynthesisError(StoryloomError):
    """No outline hypothesis survived generation and parsing."""


class NotFoundError(StoryloomError):
    pass


class GenerationError(StoryloomError):
    """Raised by non-streaming callers with the message an error event carries."""


class GenerationInProgressError(GenerationError):
    pass
