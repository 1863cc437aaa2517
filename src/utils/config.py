from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv
import yaml
import os

@dataclass
class FeedConfig:
    ws_url: Optional[str] = None
    method: str = "logsSubscribe"           # logsSubscribe or transactionSubscribe
    addresses: List[str] = field(default_factory=list)  # Empty means the pump.fun program
    commitment: str = "confirmed"
    ping_interval: float = 30.0
    initial_reconnect_delay: float = 1.0
    max_reconnect_delay: float = 60.0
    max_reconnect_attempts: int = 10

@dataclass
class DedupConfig:
    max_entries: int = 10_000
    ttl_seconds: float = 600.0

@dataclass
class PollerConfig:
    """Price polling for mints with active alerts or orders"""
    interval_seconds: float = 5.0
    fetch_timeout_seconds: float = 10.0
    rpc_url: Optional[str] = None
    max_trade_age_seconds: float = 120.0  # Older trade-feed prices fall through to the next source
    sources: List[str] = field(default_factory=lambda: ["trade_feed", "bonding_curve", "dexscreener"])

@dataclass
class OrderConfig:
    execution_timeout_seconds: float = 30.0
    evaluate_on_trades: bool = False      # Also evaluate alerts/orders on every live trade

@dataclass
class HistoryConfig:
    max_recent_tokens: int = 1000
    max_recent_trades: int = 1000
    export_dir: str = "results"

@dataclass
class ExecutionConfig:
    mode: str = "dry_run"                 # dry_run or swap_service
    swap_service_url: Optional[str] = None
    slippage_bps: int = 200
    timeout_seconds: float = 30.0

@dataclass
class DatabaseConfig:
    url: Optional[str] = None             # Audit trail disabled when unset
    run_id: Optional[str] = None

@dataclass
class LoggingConfig:
    log_dir: str = "data/logs"
    console_output: bool = True
    console_level: str = "INFO"

SECTIONS = {
    'feed': FeedConfig,
    'dedup': DedupConfig,
    'poller': PollerConfig,
    'orders': OrderConfig,
    'history': HistoryConfig,
    'execution': ExecutionConfig,
    'database': DatabaseConfig,
    'logging': LoggingConfig,
}

class Config:
    def __init__(self, config_path: str = "config.yaml", load_env: bool = True):
        self.feed = FeedConfig()
        self.dedup = DedupConfig()
        self.poller = PollerConfig()
        self.orders = OrderConfig()
        self.history = HistoryConfig()
        self.execution = ExecutionConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

        if config_path and os.path.exists(config_path):
            self.load_config(config_path)
        if load_env:
            load_dotenv()
            self.apply_env()

    def load_config(self, config_path: str):
        """Load configuration from YAML file"""
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        for name, section in SECTIONS.items():
            if name in config_data:
                setattr(self, name, section(**(config_data[name] or {})))

    def apply_env(self):
        """Environment variables win over the YAML file"""
        if os.getenv('WS_URL'):
            self.feed.ws_url = os.getenv('WS_URL')
        if os.getenv('RPC_URL'):
            self.poller.rpc_url = os.getenv('RPC_URL')
        if os.getenv('DB_URL'):
            self.database.url = os.getenv('DB_URL')
        if os.getenv('SWAP_SERVICE_URL'):
            self.execution.swap_service_url = os.getenv('SWAP_SERVICE_URL')

    def validate(self):
        if not self.feed.ws_url:
            raise ValueError("feed.ws_url (or WS_URL) is required")
        if self.execution.mode not in ("dry_run", "swap_service"):
            raise ValueError(f"Unknown execution mode: {self.execution.mode}")
        if self.execution.mode == "swap_service" and not self.execution.swap_service_url:
            raise ValueError("execution.swap_service_url (or SWAP_SERVICE_URL) is required in swap_service mode")
        unknown = set(self.poller.sources) - {"trade_feed", "bonding_curve", "dexscreener"}
        if unknown:
            raise ValueError(f"Unknown price sources: {', '.join(sorted(unknown))}")
        if "bonding_curve" in self.poller.sources and not self.poller.rpc_url:
            raise ValueError("poller.rpc_url (or RPC_URL) is required for the bonding_curve source")
