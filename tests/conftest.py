from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from config import ContractConfig
from contract_artifact import _MIN_ABI, ContractInterface
from errors import (
    ConfirmationTimeout,
    ContractNotFound,
    NotFound,
    StoreUnavailable,
)
from models import ContentIdentifier, ContractHandle, TxReceipt


# Hardhat / Anvil のテスト用アカウント #0（公開されている鍵）
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"


class FakeIpfs:
    """CID はファイル内容の sha256 から決まる（同じ内容なら同じ CID）。"""

    def __init__(self, available: bool = True, fixed_cid: Optional[str] = None) -> None:
        self.available = available
        self.fixed_cid = fixed_cid
        self.uploads: List[str] = []
        self.blobs: Dict[str, bytes] = {}
        self.closed = False

    def cid_for(self, data: bytes) -> str:
        if self.fixed_cid:
            return self.fixed_cid
        return "Qm" + hashlib.sha256(data).hexdigest()[:44]

    def upload(self, local_path) -> ContentIdentifier:
        if not self.available:
            raise StoreUnavailable("Failed to connect IPFS API: http://127.0.0.1:5001")
        path = Path(local_path)
        if not path.is_file():
            raise NotFound(f"File not found: {local_path}")
        data = path.read_bytes()
        cid = self.cid_for(data)
        self.blobs[cid] = data
        self.uploads.append(str(path))
        return ContentIdentifier(cid=cid, name=path.name, size=len(data))

    def cat(self, cid: str) -> bytes:
        if cid not in self.blobs:
            raise NotFound(f"ipfs cat failed for {cid}")
        return self.blobs[cid]

    def close(self) -> None:
        self.closed = True


class FakeLedger:
    """
    setIdentifier / getIdentifier だけを持つチェーンの代わり。
    submit した tx は wait_for_receipt で初めてストレージに反映される。
    """

    def __init__(self) -> None:
        self.storage: Dict[str, str] = {}
        self.pending: Dict[str, tuple] = {}
        self.calls: List[str] = []
        self.block = 0
        self.deploy_count = 0

        # テストごとに差し替えるフック
        self.confirm_timeout = False
        self.readback_override: Optional[str] = None

    def _next_address(self) -> str:
        self.deploy_count += 1
        return "0x" + f"{0xABC0 + self.deploy_count:040x}"

    def deploy(self, interface: ContractInterface, constructor_args=None) -> ContractHandle:
        self.calls.append("deploy")
        interface.require_bytecode()
        address = self._next_address()
        args = interface.constructor_args if constructor_args is None else tuple(constructor_args)
        self.storage[address] = args[0]
        self.block += 1
        return ContractHandle(address=address, contract=None, interface=interface, deployed=True)

    def locate(self, address: str, interface: ContractInterface) -> ContractHandle:
        self.calls.append("locate")
        if address not in self.storage:
            raise ContractNotFound(f"no contract code at {address}")
        return ContractHandle(address=address, contract=None, interface=interface, deployed=False)

    def submit_set_identifier(self, handle: ContractHandle, value: str) -> str:
        self.calls.append("submit")
        if not value:
            raise ValueError("identifier must be a non-empty string")
        tx_hash = "0x" + hashlib.sha256(f"{handle.address}:{value}:{len(self.calls)}".encode()).hexdigest()
        self.pending[tx_hash] = (handle.address, value)
        return tx_hash

    def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        self.calls.append("wait")
        if self.confirm_timeout:
            raise ConfirmationTimeout(f"tx {tx_hash} not confirmed within 0.1s (pending)")
        address, value = self.pending.pop(tx_hash)
        self.storage[address] = value
        self.block += 1
        return TxReceipt(tx_hash=tx_hash, block_number=self.block, status=1, gas_used=30_000)

    def set_identifier(self, handle: ContractHandle, value: str) -> TxReceipt:
        return self.wait_for_receipt(self.submit_set_identifier(handle, value))

    def get_identifier(self, handle: ContractHandle) -> str:
        self.calls.append("get")
        if self.readback_override is not None:
            return self.readback_override
        return self.storage[handle.address]


@pytest.fixture
def artifact_path(tmp_path: Path) -> Path:
    p = tmp_path / "CidStorage.json"
    p.write_text(json.dumps({"abi": _MIN_ABI, "bytecode": "0x6080604052"}), encoding="utf-8")
    return p


@pytest.fixture
def contract_config(artifact_path: Path) -> ContractConfig:
    return ContractConfig(artifact_path=str(artifact_path))


@pytest.fixture
def hello_file(tmp_path: Path) -> Path:
    p = tmp_path / "hello.txt"
    p.write_bytes(b"hello world")
    return p


@pytest.fixture
def fake_ipfs() -> FakeIpfs:
    return FakeIpfs()


@pytest.fixture
def fake_ledger() -> FakeLedger:
    return FakeLedger()
