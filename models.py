# models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple


class Stage(str, Enum):
    IDLE = "Idle"
    UPLOADING = "Uploading"
    DEPLOYING = "Deploying"
    SUBMITTING = "Submitting"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    VERIFYING_READBACK = "VerifyingReadback"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class ContentIdentifier:
    cid: str
    name: str = ""
    size: int = 0

    def __str__(self) -> str:
        return self.cid


@dataclass(frozen=True)
class ContractHandle:
    address: str
    contract: Any = field(repr=False, compare=False)
    interface: Any = field(repr=False, compare=False)
    deployed: bool = False


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int = 0
    contract_address: Optional[str] = None


@dataclass(frozen=True)
class RegistrationResult:
    cid: str
    contract_address: str
    deployed: bool
    receipt: TxReceipt
    history: Tuple[str, ...] = ()
