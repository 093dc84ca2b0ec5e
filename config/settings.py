import os
from dataclasses import dataclass, replace
from dotenv import load_dotenv

# Load Environment Variables from project root .env
env_path = os.path.join(os.path.dirname(__file__), "../.env")
load_dotenv(env_path)


def _env_str(key: str, default: str) -> str:
    value = os.getenv(key)
    return value.strip() if value and value.strip() else default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value not in (None, "") else default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value not in (None, "") else default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Immutable snapshot of every tunable.

    One snapshot is taken per loop tick and handed to each component,
    so a decision never mixes values from two different reads.
    """

    # ═══════════════════════════════════════════════════════════════════
    # NETWORK / PROGRAM
    # ═══════════════════════════════════════════════════════════════════
    RPC_ENDPOINT: str = "https://api.mainnet-beta.solana.com"
    ORB_PROGRAM_ID: str = "boreXQWsKpsJz5RR9BMtN8Vk4ndAk23sutj8spWYhwk"
    ORB_TOKEN_MINT: str = "orebyr4mDiPDVgnfqvF5xiu5gKnh94Szuz8dqgNqdJn"

    # ═══════════════════════════════════════════════════════════════════
    # DEPLOYMENT
    # ═══════════════════════════════════════════════════════════════════
    DEPLOY_MODE: str = "direct"  # direct | automation
    DEPLOYMENT_STRATEGY: str = "conservative"
    MANUAL_AMOUNT_PER_ROUND: float = 0.01  # SOL
    TARGET_ROUNDS: int = 100
    BUDGET_PERCENTAGE_PER_ROUND: float = 1.0
    AUTO_DOUBLING_START_AMOUNT: float = 0.001  # SOL
    AUTO_DOUBLING_POOL_INTERVAL: float = 200.0  # ORB
    BUDGET_PERCENT: float = 90.0  # share of spare SOL used as budget
    MIN_POOL_SIZE: float = 100.0  # ORB motherlode floor
    MIN_SOL_BALANCE: float = 0.3  # safety floor
    CHECK_ROUND_INTERVAL: float = 10.0  # seconds
    MAX_ATTEMPTS_PER_ROUND: int = 3

    # ═══════════════════════════════════════════════════════════════════
    # CLAIMS
    # ═══════════════════════════════════════════════════════════════════
    CLAIM_STRATEGY: str = "auto"  # auto | manual
    AUTO_CLAIM_SOL_THRESHOLD: float = 0.1
    AUTO_CLAIM_ORB_THRESHOLD: float = 1.0
    AUTO_CLAIM_STAKING_THRESHOLD: float = 0.5
    CHECK_REWARDS_INTERVAL: float = 300.0
    CHECK_BALANCE_INTERVAL: float = 600.0

    # ═══════════════════════════════════════════════════════════════════
    # SWAP (SOL top-up, auto-sell) / STAKE / AUTOMATION RESCALE
    # ═══════════════════════════════════════════════════════════════════
    AUTO_SWAP_ENABLED: bool = True
    SWAP_ORB_AMOUNT: float = 10.0
    MIN_ORB_TO_KEEP: float = 5.0
    SLIPPAGE_BPS: int = 50
    JUPITER_API_URL: str = "https://quote-api.jup.ag/v6"
    AUTO_STAKE_ENABLED: bool = False
    STAKE_ORB_THRESHOLD: float = 50.0
    AUTO_SELL_ENABLED: bool = False  # proactive ORB -> SOL sales above a wallet threshold
    WALLET_ORB_SWAP_THRESHOLD: float = 0.1
    MIN_ORB_SWAP_AMOUNT: float = 0.1
    MIN_ORB_PRICE_SOL: float = 0.0  # 0 = no price floor
    AUTO_RESCALE_AUTOMATION: bool = True  # recreate automation when the motherlode swings

    # ═══════════════════════════════════════════════════════════════════
    # FEES / SUBMISSION
    # ═══════════════════════════════════════════════════════════════════
    PRIORITY_FEE_LEVEL: str = "medium"  # low | medium | high | veryHigh
    MIN_PRIORITY_FEE: int = 100  # microLamports per CU
    MAX_PRIORITY_FEE: int = 50_000
    FEE_PROBE_TIMEOUT: float = 5.0
    TX_MAX_RETRIES: int = 3
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 30.0
    CONFIRM_TIMEOUT: float = 60.0
    RPC_TIMEOUT: float = 10.0

    # ═══════════════════════════════════════════════════════════════════
    # EV GATE / RUN CONTROL
    # ═══════════════════════════════════════════════════════════════════
    ENABLE_EV_CHECK: bool = False
    MIN_EXPECTED_VALUE: float = 0.0  # SOL
    DRY_RUN: bool = False
    MAX_ITERATIONS: int = 0  # 0 = unlimited
    SILENT_MODE: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build a snapshot from the process environment (.env already loaded)."""
        d = cls()
        return cls(
            RPC_ENDPOINT=_env_str("RPC_ENDPOINT", d.RPC_ENDPOINT),
            ORB_PROGRAM_ID=_env_str("ORB_PROGRAM_ID", d.ORB_PROGRAM_ID),
            ORB_TOKEN_MINT=_env_str("ORB_TOKEN_MINT", d.ORB_TOKEN_MINT),
            DEPLOY_MODE=_env_str("DEPLOY_MODE", d.DEPLOY_MODE).lower(),
            DEPLOYMENT_STRATEGY=_env_str("DEPLOYMENT_STRATEGY", d.DEPLOYMENT_STRATEGY).lower(),
            MANUAL_AMOUNT_PER_ROUND=_env_float("MANUAL_AMOUNT_PER_ROUND", d.MANUAL_AMOUNT_PER_ROUND),
            TARGET_ROUNDS=_env_int("TARGET_ROUNDS", d.TARGET_ROUNDS),
            BUDGET_PERCENTAGE_PER_ROUND=_env_float("BUDGET_PERCENTAGE_PER_ROUND", d.BUDGET_PERCENTAGE_PER_ROUND),
            AUTO_DOUBLING_START_AMOUNT=_env_float("AUTO_DOUBLING_START_AMOUNT", d.AUTO_DOUBLING_START_AMOUNT),
            AUTO_DOUBLING_POOL_INTERVAL=_env_float("AUTO_DOUBLING_POOL_INTERVAL", d.AUTO_DOUBLING_POOL_INTERVAL),
            BUDGET_PERCENT=_env_float("BUDGET_PERCENT", d.BUDGET_PERCENT),
            MIN_POOL_SIZE=_env_float("MIN_POOL_SIZE", d.MIN_POOL_SIZE),
            MIN_SOL_BALANCE=_env_float("MIN_SOL_BALANCE", d.MIN_SOL_BALANCE),
            CHECK_ROUND_INTERVAL=_env_float("CHECK_ROUND_INTERVAL", d.CHECK_ROUND_INTERVAL),
            MAX_ATTEMPTS_PER_ROUND=_env_int("MAX_ATTEMPTS_PER_ROUND", d.MAX_ATTEMPTS_PER_ROUND),
            CLAIM_STRATEGY=_env_str("CLAIM_STRATEGY", d.CLAIM_STRATEGY).lower(),
            AUTO_CLAIM_SOL_THRESHOLD=_env_float("AUTO_CLAIM_SOL_THRESHOLD", d.AUTO_CLAIM_SOL_THRESHOLD),
            AUTO_CLAIM_ORB_THRESHOLD=_env_float("AUTO_CLAIM_ORB_THRESHOLD", d.AUTO_CLAIM_ORB_THRESHOLD),
            AUTO_CLAIM_STAKING_THRESHOLD=_env_float("AUTO_CLAIM_STAKING_THRESHOLD", d.AUTO_CLAIM_STAKING_THRESHOLD),
            CHECK_REWARDS_INTERVAL=_env_float("CHECK_REWARDS_INTERVAL", d.CHECK_REWARDS_INTERVAL),
            CHECK_BALANCE_INTERVAL=_env_float("CHECK_BALANCE_INTERVAL", d.CHECK_BALANCE_INTERVAL),
            AUTO_SWAP_ENABLED=_env_bool("AUTO_SWAP_ENABLED", d.AUTO_SWAP_ENABLED),
            SWAP_ORB_AMOUNT=_env_float("SWAP_ORB_AMOUNT", d.SWAP_ORB_AMOUNT),
            MIN_ORB_TO_KEEP=_env_float("MIN_ORB_TO_KEEP", d.MIN_ORB_TO_KEEP),
            SLIPPAGE_BPS=_env_int("SLIPPAGE_BPS", d.SLIPPAGE_BPS),
            JUPITER_API_URL=_env_str("JUPITER_API_URL", d.JUPITER_API_URL),
            AUTO_STAKE_ENABLED=_env_bool("AUTO_STAKE_ENABLED", d.AUTO_STAKE_ENABLED),
            STAKE_ORB_THRESHOLD=_env_float("STAKE_ORB_THRESHOLD", d.STAKE_ORB_THRESHOLD),
            AUTO_SELL_ENABLED=_env_bool("AUTO_SELL_ENABLED", d.AUTO_SELL_ENABLED),
            WALLET_ORB_SWAP_THRESHOLD=_env_float("WALLET_ORB_SWAP_THRESHOLD", d.WALLET_ORB_SWAP_THRESHOLD),
            MIN_ORB_SWAP_AMOUNT=_env_float("MIN_ORB_SWAP_AMOUNT", d.MIN_ORB_SWAP_AMOUNT),
            MIN_ORB_PRICE_SOL=_env_float("MIN_ORB_PRICE_SOL", d.MIN_ORB_PRICE_SOL),
            AUTO_RESCALE_AUTOMATION=_env_bool("AUTO_RESCALE_AUTOMATION", d.AUTO_RESCALE_AUTOMATION),
            PRIORITY_FEE_LEVEL=_env_str("PRIORITY_FEE_LEVEL", d.PRIORITY_FEE_LEVEL),
            MIN_PRIORITY_FEE=_env_int("MIN_PRIORITY_FEE", d.MIN_PRIORITY_FEE),
            MAX_PRIORITY_FEE=_env_int("MAX_PRIORITY_FEE", d.MAX_PRIORITY_FEE),
            FEE_PROBE_TIMEOUT=_env_float("FEE_PROBE_TIMEOUT", d.FEE_PROBE_TIMEOUT),
            TX_MAX_RETRIES=_env_int("TX_MAX_RETRIES", d.TX_MAX_RETRIES),
            RETRY_INITIAL_DELAY=_env_float("RETRY_INITIAL_DELAY", d.RETRY_INITIAL_DELAY),
            RETRY_MAX_DELAY=_env_float("RETRY_MAX_DELAY", d.RETRY_MAX_DELAY),
            CONFIRM_TIMEOUT=_env_float("CONFIRM_TIMEOUT", d.CONFIRM_TIMEOUT),
            RPC_TIMEOUT=_env_float("RPC_TIMEOUT", d.RPC_TIMEOUT),
            ENABLE_EV_CHECK=_env_bool("ENABLE_EV_CHECK", d.ENABLE_EV_CHECK),
            MIN_EXPECTED_VALUE=_env_float("MIN_EXPECTED_VALUE", d.MIN_EXPECTED_VALUE),
            DRY_RUN=_env_bool("DRY_RUN", d.DRY_RUN),
            MAX_ITERATIONS=_env_int("MAX_ITERATIONS", d.MAX_ITERATIONS),
            SILENT_MODE=_env_bool("SILENT_MODE", d.SILENT_MODE),
        )

    def with_overrides(self, **changes) -> "Settings":
        """Copy with CLI overrides applied (e.g. DRY_RUN=True)."""
        return replace(self, **changes)

    def validate(self) -> None:
        """Fail fast on invalid tunables. Raises ConfigValidationError."""
        from orbminer.shared.system.errors import ConfigValidationError
        from orbminer.strategy.deployment import (
            ClaimPolicy,
            parse_deployment_policy,
            validate_policy,
        )
        from orbminer.execution.priority_fee import RiskTier

        if self.DEPLOY_MODE not in ("direct", "automation"):
            raise ConfigValidationError(f"DEPLOY_MODE must be 'direct' or 'automation', got {self.DEPLOY_MODE!r}")
        if self.MIN_PRIORITY_FEE < 0 or self.MAX_PRIORITY_FEE < self.MIN_PRIORITY_FEE:
            raise ConfigValidationError(
                f"priority fee bounds invalid: min={self.MIN_PRIORITY_FEE} max={self.MAX_PRIORITY_FEE}"
            )
        if not 0 < self.BUDGET_PERCENT <= 100:
            raise ConfigValidationError(f"BUDGET_PERCENT must be in (0, 100], got {self.BUDGET_PERCENT}")
        if self.MIN_SOL_BALANCE < 0 or self.MIN_ORB_TO_KEEP < 0:
            raise ConfigValidationError("balance floors must be non-negative")
        if min(self.WALLET_ORB_SWAP_THRESHOLD, self.MIN_ORB_SWAP_AMOUNT, self.MIN_ORB_PRICE_SOL) < 0:
            raise ConfigValidationError("auto-sell thresholds must be non-negative")
        if self.TX_MAX_RETRIES < 0 or self.MAX_ATTEMPTS_PER_ROUND < 1:
            raise ConfigValidationError("retry counts must be non-negative and attempts per round >= 1")
        if min(self.CHECK_ROUND_INTERVAL, self.CHECK_REWARDS_INTERVAL, self.CHECK_BALANCE_INTERVAL) <= 0:
            raise ConfigValidationError("check intervals must be positive")
        if not 0 <= self.SLIPPAGE_BPS <= 10_000:
            raise ConfigValidationError(f"SLIPPAGE_BPS must be in [0, 10000], got {self.SLIPPAGE_BPS}")

        try:
            RiskTier.from_name(self.PRIORITY_FEE_LEVEL)
            ClaimPolicy.from_name(self.CLAIM_STRATEGY)
        except ValueError as e:
            raise ConfigValidationError(str(e)) from e

        validate_policy(parse_deployment_policy(self.DEPLOYMENT_STRATEGY, self))


class EnvSettingsProvider:
    """ConfigurationProvider backed by environment variables."""

    def __init__(self, **overrides):
        self._overrides = overrides

    def snapshot(self) -> Settings:
        settings = Settings.from_env()
        if self._overrides:
            settings = settings.with_overrides(**self._overrides)
        return settings
