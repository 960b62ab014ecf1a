"""Runtime configuration from the environment.

Values come from '.env.tradebook' in the working directory, overridden by the
process environment:

    TRADEBOOK_STORE              trade file path (default: ./trades.json)
    TRADEBOOK_TESTNET            use Binance testnet endpoints (default: false)
    TRADEBOOK_LOOKUP_TIMEOUT     seconds per price lookup (default: 10)
    TRADEBOOK_COMMISSION_POLICY  execution | quote-adjusted (default: execution)
    TRADEBOOK_LOG_LEVEL          loguru level name (default: INFO)
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import dotenv_values
from loguru import logger

from tradebook.binance import BinanceClient, BinanceFeed
from tradebook.engine import PnLEngine
from tradebook.fees import POLICIES, CommissionPolicy, policyFor
from tradebook.store import TradeStore

ENV_FILE = ".env.tradebook"

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off", ""}


def envBool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default

    val = val.strip().lower()
    if val in TRUTHY:
        return True

    if val in FALSY:
        return False

    raise ValueError(f"Expected a boolean value, got: {val}")


@dataclass(frozen=True, slots=True)
class Settings:
    store: str = "./trades.json"
    testnet: bool = False
    lookupTimeout: float = 10.0
    commissionPolicy: str = "execution"
    logLevel: str = "INFO"

    def __post_init__(self):
        if self.commissionPolicy not in POLICIES:
            raise ValueError(
                f"Unknown commission policy {self.commissionPolicy!r}; expected one of: {', '.join(POLICIES)}"
            )

        if self.lookupTimeout <= 0:
            raise ValueError(f"Lookup timeout must be positive, got: {self.lookupTimeout}")

    @classmethod
    def fromEnv(cls, env: Mapping[str, str | None] | None = None) -> Settings:
        """Build settings from 'env', or from .env.tradebook + os.environ by default."""
        if env is None:
            env = {**dotenv_values(ENV_FILE), **os.environ}

        defaults = cls()

        try:
            timeout = float(env.get("TRADEBOOK_LOOKUP_TIMEOUT") or defaults.lookupTimeout)
        except ValueError:
            raise ValueError(
                f"TRADEBOOK_LOOKUP_TIMEOUT must be a number of seconds, got: {env.get('TRADEBOOK_LOOKUP_TIMEOUT')}"
            ) from None

        return cls(
            store=env.get("TRADEBOOK_STORE") or defaults.store,
            testnet=envBool(env.get("TRADEBOOK_TESTNET"), defaults.testnet),
            lookupTimeout=timeout,
            commissionPolicy=(
                env.get("TRADEBOOK_COMMISSION_POLICY") or defaults.commissionPolicy
            )
            .strip()
            .lower(),
            logLevel=(env.get("TRADEBOOK_LOG_LEVEL") or defaults.logLevel).strip().upper(),
        )

    def policy(self, **kwargs) -> CommissionPolicy:
        return policyFor(self.commissionPolicy, **kwargs)

    def tradeStore(self) -> TradeStore:
        return TradeStore(self.store)

    def client(self) -> BinanceClient:
        return BinanceClient(testnet=self.testnet)

    def feed(self) -> BinanceFeed:
        return BinanceFeed(testnet=self.testnet)

    def engine(
        self,
        client: BinanceClient,
        store: TradeStore,
        feed: BinanceFeed | None = None,
        **policyArgs,
    ) -> PnLEngine:
        """Engine pricing through 'client' and replaying trades from 'store'.

        The client still needs setup() before the first recompute."""
        return PnLEngine(
            client.price,
            loader=store.load_trades,
            policy=self.policy(**policyArgs),
            feed=feed,
            lookup_timeout=self.lookupTimeout,
        )


def setup_logging(level: str = "INFO") -> None:
    """Replace the default loguru sink with stderr at 'level'."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
