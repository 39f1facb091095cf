"""
Chain adapters and the family registry.

Adapters are looked up by the family string stored with a session, so new
chain families plug in through ``register_adapter`` without touching the
store or the tracker.
"""
import logging
from typing import Dict, List, Optional, Type

from ..config import EngineConfig
from ..models import Chain
from ..transport import TransportFactory
from .base import ChainAdapter, SessionListener
from .evm import EvmAdapter
from .solana import SolanaAdapter

logger = logging.getLogger(__name__)

_ADAPTERS: Dict[str, Type[ChainAdapter]] = {}


def register_adapter(family: str, adapter_class: Type[ChainAdapter]) -> None:
    """
    Register the adapter class for a chain family.

    Args:
        family: Family discriminator, e.g. ``"evm"``
        adapter_class: ChainAdapter subclass

    Raises:
        TypeError: If ``adapter_class`` is not a ChainAdapter subclass
    """
    if not (isinstance(adapter_class, type) and issubclass(adapter_class, ChainAdapter)):
        raise TypeError(f"{adapter_class!r} is not a ChainAdapter subclass")
    if family in _ADAPTERS and _ADAPTERS[family] is not adapter_class:
        logger.warning(f"Replacing adapter for family '{family}': {_ADAPTERS[family].__name__} -> {adapter_class.__name__}")
    _ADAPTERS[family] = adapter_class


def get_adapter_class(family: str) -> Type[ChainAdapter]:
    """
    Raises:
        ValueError: If no adapter is registered for ``family``
    """
    try:
        return _ADAPTERS[family]
    except KeyError:
        available = ", ".join(sorted(_ADAPTERS))
        raise ValueError(f"No adapter registered for chain family '{family}'. Registered: {available}") from None


def registered_families() -> List[str]:
    return sorted(_ADAPTERS)


def create_adapter(
    family: str,
    chains: List[Chain],
    transport_factory: Optional[TransportFactory] = None,
    config: Optional[EngineConfig] = None,
    logger: Optional[logging.Logger] = None,
    **kwargs
) -> ChainAdapter:
    """Instantiate the registered adapter for ``family``"""
    adapter_class = get_adapter_class(family)
    return adapter_class(chains, transport_factory=transport_factory, config=config, logger=logger, **kwargs)


register_adapter(EvmAdapter.family, EvmAdapter)
register_adapter(SolanaAdapter.family, SolanaAdapter)

__all__ = [
    "ChainAdapter",
    "EvmAdapter",
    "SessionListener",
    "SolanaAdapter",
    "create_adapter",
    "get_adapter_class",
    "register_adapter",
    "registered_families",
]
