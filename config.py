# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent

_TRUTHY = {"1", "true", "yes", "on"}


class ConfigError(RuntimeError):
    """必須の環境変数が無い・値が不正なときに、ステージ開始前に投げる。"""


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer. got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number. got {raw!r}") from None


@dataclass(frozen=True)
class IpfsConfig:
    api_url: str = "http://127.0.0.1:5001"
    timeout: float = 60.0
    pin: bool = True
    cid_version: int = 0

    @classmethod
    def from_env(cls) -> "IpfsConfig":
        return cls(
            api_url=_env_str("IPFS_API_URL", cls.api_url).rstrip("/"),
            timeout=_env_float("IPFS_TIMEOUT", cls.timeout),
            pin=_env_bool("IPFS_PIN", cls.pin),
            cid_version=_env_int("IPFS_CID_VERSION", cls.cid_version),
        )


@dataclass(frozen=True)
class EthConfig:
    rpc_url: str
    private_key: str
    contract_address: str = ""

    # 確定待ち（ブロック時間はチェーンごとに違うので定数にしない）
    confirmations: int = 1
    poll_interval: float = 0.5
    receipt_timeout: float = 120.0

    # ガスと手数料
    gas_multiplier: float = 1.2
    gas_buffer: int = 20_000
    gas_limit_min: int = 100_000
    priority_gwei: float = 1.5
    legacy_tx: bool = False

    def __post_init__(self) -> None:
        if self.confirmations < 1:
            raise ConfigError("ETH_CONFIRMATIONS must be >= 1")
        if self.poll_interval <= 0:
            raise ConfigError("ETH_POLL_INTERVAL must be > 0")
        if self.receipt_timeout <= 0:
            raise ConfigError("ETH_RECEIPT_TIMEOUT must be > 0")

    @classmethod
    def from_env(cls) -> "EthConfig":
        """
        必要な環境変数（.env でもOK）:
          - ETH_PRIVATE_KEY
        任意:
          - ETH_RPC_URL（デフォルトはローカルノード）
          - ETH_CONTRACT_ADDRESS（既存コントラクトを再利用する場合）
        """
        private_key = _env_str("ETH_PRIVATE_KEY")
        if not private_key:
            raise ConfigError("ETH_PRIVATE_KEY is not set")

        return cls(
            rpc_url=_env_str("ETH_RPC_URL", "http://127.0.0.1:8545"),
            private_key=private_key,
            contract_address=_env_str("ETH_CONTRACT_ADDRESS"),
            confirmations=_env_int("ETH_CONFIRMATIONS", 1),
            poll_interval=_env_float("ETH_POLL_INTERVAL", 0.5),
            receipt_timeout=_env_float("ETH_RECEIPT_TIMEOUT", 120.0),
            gas_multiplier=_env_float("ETH_GAS_MULTIPLIER", 1.2),
            gas_buffer=_env_int("ETH_GAS_BUFFER", 20_000),
            gas_limit_min=_env_int("ETH_GAS_LIMIT_MIN", 100_000),
            priority_gwei=_env_float("ETH_PRIORITY_GWEI", 1.5),
            legacy_tx=_env_bool("ETH_LEGACY_TX", False),
        )

    def __repr__(self) -> str:
        # 秘密鍵はログに出さない
        return (
            f"EthConfig(rpc_url={self.rpc_url!r}, contract_address={self.contract_address!r}, "
            f"confirmations={self.confirmations}, poll_interval={self.poll_interval}, "
            f"receipt_timeout={self.receipt_timeout}, legacy_tx={self.legacy_tx})"
        )


@dataclass(frozen=True)
class ContractConfig:
    artifact_path: str = ""
    source_path: str = str(BASE_DIR / "contracts" / "CidStorage.sol")
    contract_name: str = "CidStorage"
    solc_version: str = "0.8.24"

    @classmethod
    def from_env(cls) -> "ContractConfig":
        return cls(
            artifact_path=_env_str("ETH_CONTRACT_ARTIFACT"),
            source_path=_env_str("ETH_CONTRACT_SOURCE", cls.source_path),
            contract_name=_env_str("ETH_CONTRACT_NAME", cls.contract_name),
            solc_version=_env_str("ETH_SOLC_VERSION", cls.solc_version),
        )


@dataclass(frozen=True)
class Settings:
    ipfs: IpfsConfig
    eth: EthConfig
    contract: ContractConfig
    log_level: str = "INFO"


def load_settings() -> Settings:
    load_dotenv()
    return Settings(
        ipfs=IpfsConfig.from_env(),
        eth=EthConfig.from_env(),
        contract=ContractConfig.from_env(),
        log_level=_env_str("LOG_LEVEL", "INFO").upper(),
    )
