"""
Chain registry and engine configuration for the MultiWallet SDK.
"""
import os
import json
import logging
import importlib.resources
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

from .exceptions import UnsupportedChainError
from .models import Chain, ChainId

logger = logging.getLogger(__name__)


class ChainRegistry:
    """
    Immutable catalog of chain descriptors.

    The catalog ships with the package as ``chains.json`` and is keyed by
    chain family (``"evm"``, ``"solana"``, ...).
    """

    _chains_cache: Optional[Dict[str, List[Dict[str, Any]]]] = None

    @classmethod
    def load_chains(cls) -> Dict[str, List[Dict[str, Any]]]:
        """
        Load the bundled chain catalog.

        Returns:
            Mapping of family name to a list of raw chain descriptors
        """
        if cls._chains_cache is not None:
            return cls._chains_cache

        resource = importlib.resources.files("multiwallet_sdk").joinpath("chains.json")
        with resource.open("r", encoding="utf-8") as f:
            cls._chains_cache = json.load(f)
        logger.debug(f"Loaded chain catalog with families: {sorted(cls._chains_cache)}")
        return cls._chains_cache

    @classmethod
    def list_families(cls) -> List[str]:
        return sorted(cls.load_chains().keys())

    @classmethod
    def get_chains(cls, family: str) -> List[Chain]:
        """
        Get every chain of a family.

        Raises:
            ValueError: If the family is not in the catalog
        """
        catalog = cls.load_chains()
        if family not in catalog:
            available = ", ".join(sorted(catalog))
            raise ValueError(f"Unknown chain family '{family}'. Available families: {available}")
        return [Chain.model_validate({**raw, "family": family}) for raw in catalog[family]]

    @classmethod
    def get_chain(cls, family: str, chain_id: ChainId) -> Chain:
        """
        Look up a single chain.

        Raises:
            UnsupportedChainError: If the chain is not in the family's catalog
        """
        chains = cls.get_chains(family)
        for chain in chains:
            if _same_chain_id(chain.id, chain_id):
                return chain
        available = ", ".join(str(c.id) for c in chains)
        raise UnsupportedChainError(
            f"Chain '{chain_id}' not found in family '{family}'. Available chains: {available}",
            chain_id=chain_id,
        )

    @classmethod
    def get_rpc_urls(cls, family: str, chain_id: ChainId, override: Optional[str] = None) -> List[str]:
        """
        RPC endpoints of a chain, primary first.

        An explicit ``override`` wins, then the
        ``MULTIWALLET_<FAMILY>_<CHAIN>_RPC_URL`` environment variable, then the
        catalog entries.
        """
        if override:
            return [override]
        env_url = os.environ.get(rpc_url_env_var(family, chain_id))
        if env_url:
            return [env_url]
        return list(cls.get_chain(family, chain_id).rpc_urls)


def rpc_url_env_var(family: str, chain_id: ChainId) -> str:
    """Name of the environment variable overriding a chain's RPC URL"""
    return f"MULTIWALLET_{family}_{chain_id}_RPC_URL".upper().replace("-", "_")


def _same_chain_id(left: ChainId, right: ChainId) -> bool:
    return str(left) == str(right)


@dataclass
class FamilyConfig:
    """Per-family configuration: supported chains and enabled connector ids"""
    chains: List[Chain]
    connectors: List[str] = field(default_factory=list)

    def get_chain(self, chain_id: ChainId) -> Optional[Chain]:
        for chain in self.chains:
            if _same_chain_id(chain.id, chain_id):
                return chain
        return None

    @property
    def default_chain(self) -> Chain:
        return self.chains[0]


@dataclass
class EngineConfig:
    """
    Engine-wide configuration.

    Attributes:
        families: Family name to FamilyConfig
        request_timeout: Default timeout in seconds for network-touching calls
        network_retry_count: Attempts for token fetches and status polls
        backoff_factor: Base delay in seconds for exponential backoff
        poll_interval: Delay in seconds between transaction status polls
        balance_refresh_interval: Delay in seconds between balance pulls
        history_ttl: Seconds a terminal transaction stays in history
        advance_interval_range: Bounds in seconds of one validity-window advance
        confirmation_depth: Blocks on top of a receipt for account-model "confirmed"
    """
    families: Dict[str, FamilyConfig] = field(default_factory=dict)
    request_timeout: float = 30.0
    network_retry_count: int = 3
    backoff_factor: float = 0.5
    poll_interval: float = 1.0
    balance_refresh_interval: float = 30.0
    history_ttl: float = 300.0
    advance_interval_range: Tuple[float, float] = (0.4, 0.8)
    confirmation_depth: int = 1

    def __post_init__(self):
        if self.network_retry_count < 1:
            raise ValueError("network_retry_count must be at least 1")
        low, high = self.advance_interval_range
        if low <= 0 or high < low:
            raise ValueError(f"Invalid advance_interval_range: {self.advance_interval_range}")

    def get_family(self, family: str) -> FamilyConfig:
        """
        Raises:
            ValueError: If the family is not configured
        """
        if family not in self.families:
            available = ", ".join(sorted(self.families))
            raise ValueError(f"Chain family '{family}' is not configured. Configured families: {available}")
        return self.families[family]

    @classmethod
    def from_registry(cls, connectors: Dict[str, List[str]], **options) -> "EngineConfig":
        """
        Build a configuration from the bundled catalog.

        Args:
            connectors: Family name to the connector ids enabled for it
            **options: Any other EngineConfig field
        """
        families = {
            family: FamilyConfig(chains=ChainRegistry.get_chains(family), connectors=list(ids))
            for family, ids in connectors.items()
        }
        return cls(families=families, **options)

    @classmethod
    def from_env(cls, connectors: Dict[str, List[str]]) -> "EngineConfig":
        """
        Like from_registry, with tunables read from ``MULTIWALLET_*`` variables.
        """
        options: Dict[str, Any] = {}
        float_vars = {
            "MULTIWALLET_REQUEST_TIMEOUT": "request_timeout",
            "MULTIWALLET_BACKOFF_FACTOR": "backoff_factor",
            "MULTIWALLET_POLL_INTERVAL": "poll_interval",
            "MULTIWALLET_BALANCE_REFRESH_INTERVAL": "balance_refresh_interval",
            "MULTIWALLET_HISTORY_TTL": "history_ttl",
        }
        for env_var, name in float_vars.items():
            if env_var in os.environ:
                options[name] = float(os.environ[env_var])
        if "MULTIWALLET_NETWORK_RETRY_COUNT" in os.environ:
            options["network_retry_count"] = int(os.environ["MULTIWALLET_NETWORK_RETRY_COUNT"])
        if "MULTIWALLET_CONFIRMATION_DEPTH" in os.environ:
            options["confirmation_depth"] = int(os.environ["MULTIWALLET_CONFIRMATION_DEPTH"])
        return cls.from_registry(connectors, **options)
