"""
Bot configuration
Non-secret settings come from config.yaml, secrets from the environment (.env)
"""

import os
import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

import yaml
from dotenv import load_dotenv

from vault_agent.errors import ConfigurationError

logger = logging.getLogger(__name__)

ONEBALANCE_API_URL = "https://be.onebalance.io/api"

AAVE_V3_POOL = "0x794a61358D6845594F94dc1DB02A252b5b4814aD"
AAVE_V3_POOL_ETHEREUM = "0x87870Bca3F3fD6335C3F4ce8392D69350B4fA4E2"

# token symbol -> address, per chain
DEFAULT_TOKENS = {
    'ETHEREUM': {
        'USDC': '0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48',
        'aUSDC': '0x98C23E9d8f34FEFb1B7BD6a91B7FF122F4e16F5c',
        'USDT': '0xdAC17F958D2ee523a2206206994597C13D831ec7',
        'aUSDT': '0x98C23E9d8f34FEFb1B7BD6a91B7FF122F4e16F5c',
    },
    'ARBITRUM': {
        'USDC': '0xaf88d065e77c8cC2239327C5EDb3A432268e5831',
        'aUSDC': '0x724dc807b04555b71ed48a6896b6F41593b8C637',
        'USDT': '0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9',
        'aUSDT': '0x6ab707Aca953eDAeFBc4fD23bA73294241490620',
    },
    'POLYGON': {
        'USDC': '0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359',
        'aUSDC': '0x625E7708f30cA75bfd92586e17077590C60eb4cD',
        'USDT': '0xc2132D05D31c914a87C6611C10748AEb04B58e8F',
        'aUSDT': '0x6ab707Aca953eDAeFBc4fD23bA73294241490620',
    },
    'OPTIMISM': {
        'USDC': '0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85',
        'aUSDC': '0x625E7708f30cA75bfd92586e17077590C60eb4cD',
        'USDT': '0x94b008aA00579c1307B0EF2c499aD98a8ce58e58',
        'aUSDT': '0x6ab707Aca953eDAeFBc4fD23bA73294241490620',
    },
}


@dataclass
class ChainConfig:
    """Lending market deployment on one chain"""
    name: str
    caip2: str
    rpc_url: str
    aave_pool: str = AAVE_V3_POOL
    tokens: Dict[str, str] = field(default_factory=dict)
    yield_enabled: bool = True

    @property
    def chain_id(self) -> int:
        return int(self.caip2.split(':')[1])


def _default_chains() -> Dict[str, ChainConfig]:
    return {
        'ETHEREUM': ChainConfig(
            name='ETHEREUM', caip2='eip155:1', rpc_url='https://eth.llamarpc.com',
            aave_pool=AAVE_V3_POOL_ETHEREUM, tokens=dict(DEFAULT_TOKENS['ETHEREUM']),
            yield_enabled=False
        ),
        'ARBITRUM': ChainConfig(
            name='ARBITRUM', caip2='eip155:42161', rpc_url='https://arb1.arbitrum.io/rpc',
            tokens=dict(DEFAULT_TOKENS['ARBITRUM'])
        ),
        'POLYGON': ChainConfig(
            name='POLYGON', caip2='eip155:137', rpc_url='https://polygon-rpc.com',
            tokens=dict(DEFAULT_TOKENS['POLYGON'])
        ),
        'OPTIMISM': ChainConfig(
            name='OPTIMISM', caip2='eip155:10', rpc_url='https://mainnet.optimism.io',
            tokens=dict(DEFAULT_TOKENS['OPTIMISM'])
        ),
    }


@dataclass
class VaultConfig:
    token: str
    address: str
    chain: str = 'ARBITRUM'
    enabled: bool = True


def _default_vaults() -> List[VaultConfig]:
    return [
        VaultConfig(token='USDC', address='0xc433DC0586EA17eDFA4B9Ea2987B3eAf177B50F4'),
        VaultConfig(token='USDT', address='0x152Cf498fA14dB52D3e6797066C7D528e8023535'),
    ]


@dataclass
class OneBalanceConfig:
    base_url: str = ONEBALANCE_API_URL
    request_timeout_seconds: int = 30
    execution_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 1.0


@dataclass
class EngineConfig:
    """Reallocation loop settings"""
    interval_seconds: float = 60.0
    min_apy_improvement: float = 0.0
    failure_backoff_seconds: float = 1.0


@dataclass
class EventConfig:
    start_block: int = 353872007
    window_size: int = 500
    poll_interval_seconds: float = 2.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 5.0


@dataclass
class StorageConfig:
    state_path: str = "bot-state.json"
    journal_path: str = "bot-journal.db"
    default_chain: str = 'ARBITRUM'


@dataclass
class MonitoringConfig:
    log_level: str = "INFO"
    log_file: str = ""


@dataclass
class BotConfig:
    """Complete bot configuration"""
    environment: str = "development"
    private_key: str = ""
    onebalance_api_key: str = ""
    onebalance: OneBalanceConfig = None
    chains: Dict[str, ChainConfig] = None
    vaults: List[VaultConfig] = None
    engine: EngineConfig = None
    events: EventConfig = None
    storage: StorageConfig = None
    monitoring: MonitoringConfig = None

    def __post_init__(self):
        if self.onebalance is None:
            self.onebalance = OneBalanceConfig()
        if self.chains is None:
            self.chains = _default_chains()
        if self.vaults is None:
            self.vaults = _default_vaults()
        if self.engine is None:
            self.engine = EngineConfig()
        if self.events is None:
            self.events = EventConfig()
        if self.storage is None:
            self.storage = StorageConfig()
        if self.monitoring is None:
            self.monitoring = MonitoringConfig()

    # ---- lookups ----

    @property
    def enabled_vaults(self) -> List[VaultConfig]:
        return [v for v in self.vaults if v.enabled]

    @property
    def tokens(self) -> List[str]:
        return [v.token for v in self.enabled_vaults]

    @property
    def vault_chain(self) -> ChainConfig:
        """Chain the vault contracts live on"""
        names = {v.chain for v in self.enabled_vaults} or {self.storage.default_chain}
        if len(names) > 1:
            raise ConfigurationError(f"Vaults must share one chain, got {sorted(names)}")
        return self.chain(names.pop())

    def chain(self, name: str) -> ChainConfig:
        if name not in self.chains:
            raise ConfigurationError(f"Unknown chain: {name}")
        return self.chains[name]

    def chain_by_caip2(self, caip2: str) -> ChainConfig:
        for chain in self.chains.values():
            if chain.caip2 == caip2:
                return chain
        raise ConfigurationError(f"Unknown chain id: {caip2}")

    def token_address(self, token: str, chain: str) -> str:
        tokens = self.chain(chain).tokens
        if token not in tokens:
            raise ConfigurationError(f"No {token} address configured on {chain}")
        return tokens[token]

    def is_development(self) -> bool:
        return self.environment == "development"

    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self):
        """Raise ConfigurationError listing everything that is missing"""
        missing = []
        if not self.private_key.strip():
            missing.append("PRIVATE_KEY")
        if not self.onebalance_api_key.strip():
            missing.append("ONE_BALANCE_API_KEY")
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        if not self.enabled_vaults:
            raise ConfigurationError("No enabled vaults configured")
        if self.storage.default_chain not in self.chains:
            raise ConfigurationError(f"Default chain {self.storage.default_chain} is not configured")
        if self.events.window_size <= 0:
            raise ConfigurationError("events.window_size must be positive")
        for vault in self.enabled_vaults:
            self.chain(vault.chain)
            for chain in self.chains.values():
                if chain.yield_enabled:
                    self.token_address(vault.token, chain.name)
                    self.token_address(f"a{vault.token}", chain.name)
        logger.debug(f"Vaults live on {self.vault_chain.name}")

    def to_dict(self) -> Dict:
        """Configuration without secrets (safe to log)"""
        data = asdict(self)
        data.pop('private_key')
        data.pop('onebalance_api_key')
        return data


class ConfigManager:
    """Configuration management"""

    @staticmethod
    def load_config(config_path: Optional[str] = None, env_path: Optional[str] = None) -> BotConfig:
        """Load config.yaml (if present) and overlay environment variables"""

        load_dotenv(env_path)
        config_path = config_path or os.getenv("VAULT_BOT_CONFIG", "config.yaml")

        config_dict = {}
        if os.path.exists(config_path):
            with open(config_path, 'r') as f:
                config_dict = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        else:
            logger.info(f"No config file at {config_path}, using defaults")

        try:
            config = ConfigManager._from_dict(config_dict)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

        ConfigManager._apply_env(config)
        return config

    @staticmethod
    def _from_dict(config_dict: Dict) -> BotConfig:
        # Convert nested dicts to dataclasses
        config_dict = dict(config_dict)
        if 'onebalance' in config_dict:
            config_dict['onebalance'] = OneBalanceConfig(**config_dict['onebalance'])
        if 'chains' in config_dict:
            chains = _default_chains()
            for name, chain in config_dict['chains'].items():
                if name in chains:
                    merged = asdict(chains[name])
                    merged.update(chain)
                    chains[name] = ChainConfig(**merged)
                else:
                    chains[name] = ChainConfig(name=name, **chain)
            config_dict['chains'] = chains
        if 'vaults' in config_dict:
            config_dict['vaults'] = [VaultConfig(**vault) for vault in config_dict['vaults']]
        if 'engine' in config_dict:
            config_dict['engine'] = EngineConfig(**config_dict['engine'])
        if 'events' in config_dict:
            config_dict['events'] = EventConfig(**config_dict['events'])
        if 'storage' in config_dict:
            config_dict['storage'] = StorageConfig(**config_dict['storage'])
        if 'monitoring' in config_dict:
            config_dict['monitoring'] = MonitoringConfig(**config_dict['monitoring'])
        return BotConfig(**config_dict)

    @staticmethod
    def _apply_env(config: BotConfig):
        config.private_key = os.getenv("PRIVATE_KEY", config.private_key)
        config.onebalance_api_key = os.getenv("ONE_BALANCE_API_KEY", config.onebalance_api_key)
        config.environment = os.getenv("NODE_ENV", config.environment)
        config.monitoring.log_level = os.getenv("LOG_LEVEL", config.monitoring.log_level).upper()

        for name, chain in config.chains.items():
            rpc_url = os.getenv(f"{name}_RPC_URL")
            if rpc_url:
                chain.rpc_url = rpc_url
