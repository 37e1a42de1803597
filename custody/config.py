"""
Agent Configuration

Everything the agent needs is read from environment variables once at
startup. Missing or malformed required settings raise ConfigurationError,
which stops the process before the loop starts.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from custody.errors import ConfigurationError
from custody.identity import normalize_address, parse_address_list
from custody.reconcile import DEFAULT_CONFIRM_TIMEOUT_MS
from custody.triggers import PriceTrigger, sanitize_price_triggers

DEFAULT_POLL_INTERVAL_MS = 60_000
DEFAULT_OPENAI_MODEL = "gpt-4.1-mini"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_CLOB_HOST = "https://clob.polymarket.com"
DEFAULT_DATA_API_HOST = "https://data-api.polymarket.com"
DEFAULT_PROPOSAL_LOOKBACK_BLOCKS = 5_000

# Polygon mainnet Polymarket deployment
DEFAULT_CONDITIONAL_TOKENS = "0x4d97dcd97ec945f40cf65f87097ace5ea0476045"
DEFAULT_CTF_EXCHANGE = "0x4bfb41d5b3570defd03c39a9a4d8de6bd8b8982e"
DEFAULT_COLLATERAL_TOKEN = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"


@dataclass
class PolymarketSettings:
    conditional_tokens: str = DEFAULT_CONDITIONAL_TOKENS
    exchange: str = DEFAULT_CTF_EXCHANGE
    collateral_token: str = DEFAULT_COLLATERAL_TOKEN
    clob_host: str = DEFAULT_CLOB_HOST
    data_api_host: str = DEFAULT_DATA_API_HOST
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    api_passphrase: Optional[str] = None
    max_retries: int = 1
    retry_delay_ms: int = 250
    request_timeout_ms: int = 15_000

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and self.api_passphrase)


@dataclass
class CopyTradingSettings:
    source_user: Optional[str] = None
    market: Optional[str] = None
    yes_token_id: Optional[str] = None
    no_token_id: Optional[str] = None
    fee_bps: int = 100


@dataclass
class DcaSettings:
    deposit_asset: Optional[str] = None
    reimbursement_asset: Optional[str] = None
    min_vault_balance_wei: int = 0
    interval_seconds: int = 200
    max_cycles: int = 2


@dataclass
class AgentConfig:
    rpc_url: str
    private_key: str
    commitment_safe: str
    og_module: str
    agent_module: str = "default"
    chain_id: Optional[int] = None
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    start_block: Optional[int] = None
    watch_assets: list[str] = field(default_factory=list)
    watch_native_balance: bool = True
    default_deposit_asset: Optional[str] = None
    default_deposit_amount_wei: Optional[int] = None
    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_OPENAI_MODEL
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    commitment_text: str = ""
    propose_enabled: bool = True
    dispute_enabled: bool = True
    bond_spenders: list[str] = field(default_factory=list)
    authorized_recipients: list[str] = field(default_factory=list)
    proposal_confirm_timeout_ms: int = DEFAULT_CONFIRM_TIMEOUT_MS
    proposal_lookback_blocks: int = DEFAULT_PROPOSAL_LOOKBACK_BLOCKS
    uniswap_v3_factory: Optional[str] = None
    price_triggers: list[PriceTrigger] = field(default_factory=list)
    polymarket: PolymarketSettings = field(default_factory=PolymarketSettings)
    copy_trading: CopyTradingSettings = field(default_factory=CopyTradingSettings)
    dca: DcaSettings = field(default_factory=DcaSettings)
    audit_database_url: Optional[str] = None

    def redacted(self) -> dict:
        """Settings safe to expose on the service surface."""
        return {
            "agent_module": self.agent_module,
            "commitment_safe": self.commitment_safe,
            "og_module": self.og_module,
            "poll_interval_ms": self.poll_interval_ms,
            "watch_assets": self.watch_assets,
            "watch_native_balance": self.watch_native_balance,
            "openai_model": self.openai_model,
            "decisions_enabled": bool(self.openai_api_key),
            "propose_enabled": self.propose_enabled,
            "dispute_enabled": self.dispute_enabled,
            "price_triggers": [t.id for t in self.price_triggers],
        }


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _required(env: Mapping[str, str], key: str) -> str:
    value = (env.get(key) or "").strip()
    if not value:
        raise ConfigurationError(f"Missing required env var {key}")
    return value


def _int(env: Mapping[str, str], key: str, default: Optional[int] = None) -> Optional[int]:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"{key} must be non-negative, got {value}")
    return value


def _flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in ("false", "0", "no", "off")


def _optional_address(env: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    raw = (env.get(key) or "").strip()
    if not raw:
        return normalize_address(default, key) if default else None
    return normalize_address(raw, key)


def _commitment_text(env: Mapping[str, str]) -> str:
    text = env.get("COMMITMENT_TEXT")
    if text:
        return text
    path = env.get("COMMITMENT_TEXT_PATH")
    if path:
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read COMMITMENT_TEXT_PATH {path}: {exc}") from exc
    return ""


def _price_triggers(env: Mapping[str, str]) -> list[PriceTrigger]:
    raw = env.get("PRICE_TRIGGERS")
    if not raw:
        return []
    try:
        return sanitize_price_triggers(json.loads(raw))
    except (json.JSONDecodeError, ValueError) as exc:
        raise ConfigurationError(f"PRICE_TRIGGERS is invalid: {exc}") from exc


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(environ: Mapping[str, str] | None = None) -> AgentConfig:
    """Build an AgentConfig from ``environ`` (defaults to os.environ)."""
    env = os.environ if environ is None else environ

    polymarket = PolymarketSettings(
        conditional_tokens=_optional_address(env, "POLYMARKET_CONDITIONAL_TOKENS", DEFAULT_CONDITIONAL_TOKENS),
        exchange=_optional_address(env, "POLYMARKET_EXCHANGE", DEFAULT_CTF_EXCHANGE),
        collateral_token=_optional_address(env, "POLYMARKET_COLLATERAL_TOKEN", DEFAULT_COLLATERAL_TOKEN),
        clob_host=(env.get("POLYMARKET_CLOB_HOST") or DEFAULT_CLOB_HOST).rstrip("/"),
        data_api_host=(env.get("POLYMARKET_DATA_API_HOST") or DEFAULT_DATA_API_HOST).rstrip("/"),
        api_key=env.get("POLYMARKET_CLOB_API_KEY") or None,
        api_secret=env.get("POLYMARKET_CLOB_API_SECRET") or None,
        api_passphrase=env.get("POLYMARKET_CLOB_API_PASSPHRASE") or None,
        max_retries=_int(env, "POLYMARKET_CLOB_MAX_RETRIES", 1),
        retry_delay_ms=_int(env, "POLYMARKET_CLOB_RETRY_DELAY_MS", 250),
        request_timeout_ms=_int(env, "POLYMARKET_CLOB_REQUEST_TIMEOUT_MS", 15_000),
    )

    copy_trading = CopyTradingSettings(
        source_user=_optional_address(env, "COPY_TRADING_SOURCE_USER"),
        market=env.get("COPY_TRADING_MARKET") or None,
        yes_token_id=env.get("COPY_TRADING_YES_TOKEN_ID") or None,
        no_token_id=env.get("COPY_TRADING_NO_TOKEN_ID") or None,
        fee_bps=_int(env, "COPY_TRADING_FEE_BPS", 100),
    )
    if copy_trading.fee_bps >= 10_000:
        raise ConfigurationError("COPY_TRADING_FEE_BPS must be below 10000")

    dca = DcaSettings(
        deposit_asset=_optional_address(env, "DCA_DEPOSIT_ASSET"),
        reimbursement_asset=_optional_address(env, "DCA_REIMBURSEMENT_ASSET"),
        min_vault_balance_wei=_int(env, "DCA_MIN_VAULT_BALANCE_WEI", 0),
        interval_seconds=_int(env, "DCA_INTERVAL_SECONDS", 200),
        max_cycles=_int(env, "DCA_MAX_CYCLES", 2),
    )

    return AgentConfig(
        rpc_url=_required(env, "RPC_URL"),
        private_key=_required(env, "PRIVATE_KEY"),
        commitment_safe=normalize_address(_required(env, "COMMITMENT_SAFE"), "COMMITMENT_SAFE"),
        og_module=normalize_address(_required(env, "OG_MODULE"), "OG_MODULE"),
        agent_module=(env.get("AGENT_MODULE") or "default").strip(),
        chain_id=_int(env, "CHAIN_ID"),
        poll_interval_ms=_int(env, "POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS),
        start_block=_int(env, "START_BLOCK"),
        watch_assets=parse_address_list(env.get("WATCH_ASSETS"), "WATCH_ASSETS"),
        watch_native_balance=_flag(env, "WATCH_NATIVE_BALANCE", True),
        default_deposit_asset=_optional_address(env, "DEFAULT_DEPOSIT_ASSET"),
        default_deposit_amount_wei=_int(env, "DEFAULT_DEPOSIT_AMOUNT_WEI"),
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        openai_model=env.get("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL,
        openai_base_url=(env.get("OPENAI_BASE_URL") or DEFAULT_OPENAI_BASE_URL).rstrip("/"),
        commitment_text=_commitment_text(env),
        propose_enabled=_flag(env, "PROPOSE_ENABLED", True),
        dispute_enabled=_flag(env, "DISPUTE_ENABLED", True),
        bond_spenders=parse_address_list(env.get("BOND_SPENDERS"), "BOND_SPENDERS"),
        authorized_recipients=parse_address_list(env.get("AUTHORIZED_RECIPIENTS"), "AUTHORIZED_RECIPIENTS"),
        proposal_confirm_timeout_ms=_int(env, "PROPOSAL_CONFIRM_TIMEOUT_MS", DEFAULT_CONFIRM_TIMEOUT_MS),
        proposal_lookback_blocks=_int(env, "PROPOSAL_LOOKBACK_BLOCKS", DEFAULT_PROPOSAL_LOOKBACK_BLOCKS),
        uniswap_v3_factory=_optional_address(env, "UNISWAP_V3_FACTORY"),
        price_triggers=_price_triggers(env),
        polymarket=polymarket,
        copy_trading=copy_trading,
        dca=dca,
        audit_database_url=env.get("AUDIT_DATABASE_URL") or None,
    )
