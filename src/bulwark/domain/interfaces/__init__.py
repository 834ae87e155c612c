"""Domain interfaces for dependency inversion.

The domain depends only on these abstractions; `bulwark.core.clock` and
`bulwark.infrastructure` provide the concrete implementations.
"""

from .infrastructure import IClock, ICounterStore

__all__ = [
    "IClock",
    "ICounterStore",
]
