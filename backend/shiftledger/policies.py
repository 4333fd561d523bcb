# Overview: Ledger policy object built from app config and injected into services.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app


SETTLEMENT_MANUAL = "MANUAL"
SETTLEMENT_AUTO_ON_PRINT = "AUTO_SETTLE_ON_PRINT"

VOID_ALLOW_SETTLED = "ALLOW_SETTLED"
VOID_PENDING_ONLY = "PENDING_ONLY"

UNSETTLED_BLOCK = "BLOCK"
UNSETTLED_WARN = "WARN"


@dataclass(frozen=True)
class LedgerPolicy:
    """
    Named, configurable behaviours of the ledger.

    - settlement_mode: initial receipt state and whether printing the bill settles it
    - void_policy: whether SETTLED receipts may still be voided
    - unsettled_on_close: BLOCK refuses to close with open receipts, WARN proceeds
    - allow_oversell: settle even when inventory refuses the deduction
    """
    settlement_mode: str = SETTLEMENT_MANUAL
    void_policy: str = VOID_ALLOW_SETTLED
    unsettled_on_close: str = UNSETTLED_BLOCK
    allow_oversell: bool = False
    period_close_wait_seconds: float = 2.0
    override_grant_ttl_seconds: int = 300
    retry_attempts: int = 3
    dispatch_max_attempts: int = 5

    def __post_init__(self):
        if self.settlement_mode not in {SETTLEMENT_MANUAL, SETTLEMENT_AUTO_ON_PRINT}:
            raise ValueError(f"Unknown settlement mode: {self.settlement_mode}")
        if self.void_policy not in {VOID_ALLOW_SETTLED, VOID_PENDING_ONLY}:
            raise ValueError(f"Unknown void policy: {self.void_policy}")
        if self.unsettled_on_close not in {UNSETTLED_BLOCK, UNSETTLED_WARN}:
            raise ValueError(f"Unknown unsettled-on-close policy: {self.unsettled_on_close}")

    @property
    def initial_receipt_state(self) -> str:
        if self.settlement_mode == SETTLEMENT_AUTO_ON_PRINT:
            return "CREATED"
        return "PENDING"

    @classmethod
    def from_config(cls, config) -> "LedgerPolicy":
        return cls(
            settlement_mode=str(config.get("SETTLEMENT_MODE", SETTLEMENT_MANUAL)).upper(),
            void_policy=str(config.get("RECEIPT_VOID_POLICY", VOID_ALLOW_SETTLED)).upper(),
            unsettled_on_close=str(config.get("UNSETTLED_ON_CLOSE", UNSETTLED_BLOCK)).upper(),
            allow_oversell=bool(config.get("ALLOW_OVERSELL", False)),
            period_close_wait_seconds=float(config.get("PERIOD_CLOSE_WAIT_SECONDS", 2.0)),
            override_grant_ttl_seconds=int(config.get("OVERRIDE_GRANT_TTL_SECONDS", 300)),
            retry_attempts=int(config.get("LEDGER_RETRY_ATTEMPTS", 3)),
            dispatch_max_attempts=int(config.get("DISPATCH_MAX_ATTEMPTS", 5)),
        )


def get_ledger_policy() -> LedgerPolicy:
    return current_app.extensions["shiftledger.policy"]
