# eth_client.py
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Sequence

from eth_account import Account
from requests.exceptions import ConnectionError as HTTPConnectionError
from requests.exceptions import Timeout as HTTPTimeout
from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)

from config import EthConfig
from contract_artifact import ContractInterface
from errors import (
    ConfirmationTimeout,
    ContractNotFound,
    DeploymentRejected,
    ExecutionReverted,
    NetworkUnavailable,
    SigningFailed,
    TransactionRejected,
)
from models import ContractHandle, TxReceipt


logger = logging.getLogger(__name__)

# 同じ鍵から並行して送ると nonce が衝突するので、送信元アドレスごとに直列化する
_TX_LOCKS: Dict[str, threading.Lock] = {}
_TX_LOCKS_GUARD = threading.Lock()

_FEE_KEYS = ("gasPrice", "maxFeePerGas", "maxPriorityFeePerGas")


def _tx_lock_for(address: str) -> threading.Lock:
    with _TX_LOCKS_GUARD:
        lock = _TX_LOCKS.get(address)
        if lock is None:
            lock = _TX_LOCKS[address] = threading.Lock()
        return lock


@contextmanager
def _rpc_errors(endpoint: str) -> Iterator[None]:
    try:
        yield
    except (HTTPConnectionError, HTTPTimeout) as ex:
        raise NetworkUnavailable(f"Failed to reach RPC: {endpoint} ({ex})") from ex
    except Web3RPCError as ex:
        # "header not found" など、ノードが返したエラー
        raise NetworkUnavailable(f"RPC error from {endpoint}: {ex}") from ex
    except Web3Exception as ex:
        raise NetworkUnavailable(f"web3 call to {endpoint} failed: {type(ex).__name__}: {ex}") from ex


class EthereumClient:
    """
    Ethereum(またはローカル Hardhat / Ganache)とのやり取りをまとめたクラス。

    - コントラクトのデプロイ / 既存アドレスへの接続
    - setIdentifier の署名・送信
    - receipt の確定待ち（間隔・上限は EthConfig）
    - getIdentifier の読み出し

    リトライはしない。失敗したらそのまま errors.py の例外を投げる。
    """

    def __init__(self, config: EthConfig, w3: Optional[Web3] = None) -> None:
        self._cfg = config
        self._w3 = w3 or Web3(Web3.HTTPProvider(config.rpc_url))

        try:
            self._acct = Account.from_key(config.private_key)
        except Exception as ex:
            # 例外メッセージに鍵の断片が含まれうるので from None
            raise SigningFailed(f"ETH_PRIVATE_KEY is not a valid private key ({type(ex).__name__})") from None

        self._tx_lock = _tx_lock_for(self._acct.address)

    @property
    def address(self) -> str:
        return self._acct.address

    def ensure_connected(self) -> None:
        with _rpc_errors(self._cfg.rpc_url):
            connected = self._w3.is_connected()
        if not connected:
            raise NetworkUnavailable(f"Failed to connect RPC: {self._cfg.rpc_url}")

    def account_info(self) -> dict:
        with _rpc_errors(self._cfg.rpc_url):
            return {
                "address": self._acct.address,
                "chainId": self._w3.eth.chain_id,
                "balance": self._w3.eth.get_balance(self._acct.address),
                "nonce": self._w3.eth.get_transaction_count(self._acct.address, "pending"),
            }

    # ------------------------------------------------------------------
    # tx の組み立て
    # ------------------------------------------------------------------

    @staticmethod
    def _rejection_reason(exc: Exception) -> str:
        msg = str(exc).lower()
        if "nonce too low" in msg or "nonce too high" in msg or "invalid nonce" in msg:
            return "bad nonce"
        if "insufficient funds" in msg:
            return "insufficient funds"
        if "underpriced" in msg or "fee too low" in msg or "max fee per gas less than" in msg:
            return "gas price too low"
        if "out of gas" in msg or "intrinsic gas too low" in msg:
            return "out of gas"
        return "rejected by node"

    def _pad_gas(self, estimated: Optional[int]) -> int:
        if estimated is None:
            return self._cfg.gas_limit_min
        return max(
            int(estimated * self._cfg.gas_multiplier),
            estimated + self._cfg.gas_buffer,
            self._cfg.gas_limit_min,
        )

    def _fee_params(self) -> Dict[str, int]:
        if self._cfg.legacy_tx:
            return {"gasPrice": int(self._w3.eth.gas_price)}

        # EIP-1559 が使える環境ならそれを使う（無理なら legacy にフォールバック）
        latest = self._w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": int(self._w3.eth.gas_price)}

        priority = int(self._w3.to_wei(self._cfg.priority_gwei, "gwei"))
        return {
            "maxPriorityFeePerGas": priority,
            "maxFeePerGas": int(base_fee * 2 + priority),
        }

    def _estimate_gas(self, fn: Any) -> Optional[int]:
        try:
            return int(fn.estimate_gas({"from": self._acct.address}))
        except ContractLogicError as ex:
            raise ExecutionReverted(f"execution reverted during gas estimation: {ex}") from ex
        except (HTTPConnectionError, HTTPTimeout):
            raise
        except Exception as ex:
            # 推定できないノードもあるので最低値で送る
            logger.debug("estimate_gas failed (%s); using gas_limit_min", ex)
            return None

    def _send(self, fn: Any, label: str) -> str:
        """fn は ContractFunction か ContractConstructor。tx hash(0x付き hex) を返す。"""
        with _rpc_errors(self._cfg.rpc_url), self._tx_lock:
            gas = self._pad_gas(self._estimate_gas(fn))
            params = {
                "from": self._acct.address,
                "nonce": self._w3.eth.get_transaction_count(self._acct.address, "pending"),
                "chainId": self._w3.eth.chain_id,
                "gas": gas,
                **self._fee_params(),
            }
            try:
                tx = fn.build_transaction(params)
            except Web3RPCError:
                raise
            except Web3Exception as ex:
                # 引数が ABI に合わないなど、送る前に組み立てられない
                raise TransactionRejected(f"cannot build {label} tx: {type(ex).__name__}: {ex}") from ex

            try:
                signed = self._acct.sign_transaction(tx)
            except Exception as ex:
                raise SigningFailed(f"failed to sign {label} tx: {type(ex).__name__}: {ex}") from ex

            try:
                tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as ex:
                raise ExecutionReverted(f"{label} reverted: {ex}") from ex
            except (HTTPConnectionError, HTTPTimeout):
                raise
            except Exception as ex:
                raise TransactionRejected(f"{label} tx {self._rejection_reason(ex)}: {ex}") from ex

        txh = Web3.to_hex(tx_hash)
        logger.debug(
            "sent %s tx %s (nonce=%s gas=%s fee=%s)",
            label, txh, params["nonce"], gas,
            {k: params[k] for k in _FEE_KEYS if k in params},
        )
        return txh

    # ------------------------------------------------------------------
    # 確定待ち
    # ------------------------------------------------------------------

    def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        """
        receipt が出るまで poll_interval ごとに確認し、さらに confirmations 分の深さを待つ。
        合計で receipt_timeout 秒を超えたら ConfirmationTimeout。
        status == 0 なら ExecutionReverted。
        """
        cfg = self._cfg
        deadline = time.monotonic() + cfg.receipt_timeout

        with _rpc_errors(cfg.rpc_url):
            while True:
                try:
                    receipt = self._w3.eth.get_transaction_receipt(tx_hash)
                except TransactionNotFound:
                    receipt = None

                if receipt is not None:
                    block_number = int(receipt["blockNumber"])
                    if int(receipt["status"]) == 0:
                        raise ExecutionReverted(f"tx {tx_hash} reverted in block {block_number}")

                    depth = int(self._w3.eth.block_number) - block_number + 1
                    if depth >= cfg.confirmations:
                        contract_address = receipt.get("contractAddress")
                        return TxReceipt(
                            tx_hash=tx_hash,
                            block_number=block_number,
                            status=int(receipt["status"]),
                            gas_used=int(receipt.get("gasUsed") or 0),
                            contract_address=str(contract_address) if contract_address else None,
                        )

                if time.monotonic() >= deadline:
                    state = "pending" if receipt is None else "included but not deep enough"
                    raise ConfirmationTimeout(
                        f"tx {tx_hash} not confirmed within {cfg.receipt_timeout}s ({state})"
                    )
                time.sleep(cfg.poll_interval)

    # ------------------------------------------------------------------
    # コントラクト
    # ------------------------------------------------------------------

    def locate(self, address: str, interface: ContractInterface) -> ContractHandle:
        """既存のアドレスに接続する。コードが無ければ ContractNotFound。"""
        try:
            checksum = Web3.to_checksum_address(address)
        except ValueError as ex:
            raise ContractNotFound(f"not a contract address: {address!r}") from ex

        self.ensure_connected()
        with _rpc_errors(self._cfg.rpc_url):
            code = self._w3.eth.get_code(checksum)
        if not bytes(code or b""):
            raise ContractNotFound(f"no contract code at {checksum}")

        contract = self._w3.eth.contract(address=checksum, abi=list(interface.abi))
        return ContractHandle(address=checksum, contract=contract, interface=interface, deployed=False)

    def deploy(self, interface: ContractInterface, constructor_args: Optional[Sequence[Any]] = None) -> ContractHandle:
        bytecode = interface.require_bytecode()
        args = interface.constructor_args if constructor_args is None else tuple(constructor_args)

        self.ensure_connected()

        try:
            factory = self._w3.eth.contract(abi=list(interface.abi), bytecode=bytecode)
            ctor = factory.constructor(*args)
        except Web3Exception as ex:
            raise DeploymentRejected(f"cannot build deploy tx: {type(ex).__name__}: {ex}") from ex

        try:
            tx_hash = self._send(ctor, "deploy")
            receipt = self.wait_for_receipt(tx_hash)
        except (SigningFailed, TransactionRejected, ExecutionReverted) as ex:
            raise DeploymentRejected(str(ex)) from ex

        if not receipt.contract_address:
            raise DeploymentRejected(f"deploy tx {tx_hash} has no contractAddress in receipt")

        address = Web3.to_checksum_address(receipt.contract_address)
        contract = self._w3.eth.contract(address=address, abi=list(interface.abi))
        logger.info("deployed contract at %s (block %d)", address, receipt.block_number)
        return ContractHandle(address=address, contract=contract, interface=interface, deployed=True)

    def submit_set_identifier(self, handle: ContractHandle, value: str) -> str:
        if not isinstance(value, str) or not value:
            raise ValueError("identifier must be a non-empty string")

        try:
            fn = getattr(handle.contract.functions, handle.interface.setter)(value)
        except Web3Exception as ex:
            raise TransactionRejected(f"cannot build {handle.interface.setter} tx: {type(ex).__name__}: {ex}") from ex
        return self._send(fn, handle.interface.setter)

    def set_identifier(self, handle: ContractHandle, value: str) -> TxReceipt:
        return self.wait_for_receipt(self.submit_set_identifier(handle, value))

    def get_identifier(self, handle: ContractHandle) -> str:
        with _rpc_errors(self._cfg.rpc_url):
            try:
                return str(getattr(handle.contract.functions, handle.interface.getter)().call())
            except (BadFunctionCallOutput, ContractLogicError) as ex:
                raise ContractNotFound(f"{handle.interface.getter}() failed at {handle.address}: {ex}") from ex
