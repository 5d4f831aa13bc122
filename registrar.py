# registrar.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Type

from config import ContractConfig
from contract_artifact import resolve_interface
from errors import (
    ConfirmError,
    ContentStoreError,
    DeployError,
    LedgerError,
    PipelineError,
    ReadbackError,
    SubmitError,
    UploadError,
    VerificationMismatch,
)
from eth_client import EthereumClient
from ipfs_client import IpfsClient
from models import ContractHandle, RegistrationResult, Stage


logger = logging.getLogger(__name__)

TransitionCallback = Callable[[Stage, Stage], None]


class RegistrationRun:
    """1回分の実行状態。Idle から Done まで一方向にしか進まない。"""

    def __init__(self, on_transition: Optional[TransitionCallback] = None) -> None:
        self.stage = Stage.IDLE
        self.history: List[str] = [Stage.IDLE.value]
        self._on_transition = on_transition

    def advance(self, stage: Stage) -> None:
        prev, self.stage = self.stage, stage
        self.history.append(stage.value)
        logger.info("stage %s -> %s", prev.value, stage.value)
        if self._on_transition is not None:
            self._on_transition(prev, stage)

    def fail(self, error_cls: Type[PipelineError], cause: BaseException) -> PipelineError:
        failed_at = self.stage
        self.advance(Stage.FAILED)
        logger.error("%s failed: %s: %s", failed_at.value, type(cause).__name__, cause)
        return error_cls(failed_at.value, cause, self.history)


class FileRegistrar:
    """
    1. IPFS にファイルをアップロードして CID を得る
    2. コントラクトをデプロイ（アドレス指定があれば既存のものに接続）
    3. setIdentifier(CID) を署名して送信
    4. receipt の確定を待つ
    5. getIdentifier() で読み戻し、送った CID と一致することを確認

    という “ユースケース” を表現するクラス。

    リトライもロールバックもしない。途中で失敗した場合、アップロード済みの
    ファイルやデプロイ済みのコントラクトはそのまま残る（同じファイルで再実行しても
    CID は同じ、setIdentifier も同じ値の上書きなので安全）。
    """

    def __init__(
        self,
        ipfs_client: IpfsClient,
        eth_client: EthereumClient,
        contract_config: Optional[ContractConfig] = None,
        contract_address: str = "",
    ) -> None:
        self._ipfs_client = ipfs_client
        self._eth_client = eth_client
        self._contract_config = contract_config or ContractConfig()
        self._contract_address = contract_address

    def _deploy_or_locate(self, contract_address: str) -> ContractHandle:
        if contract_address:
            iface = resolve_interface(self._contract_config, need_bytecode=False)
            handle = self._eth_client.locate(contract_address, iface)
            logger.info("using existing contract at %s", handle.address)
            return handle

        iface = resolve_interface(self._contract_config, need_bytecode=True)
        return self._eth_client.deploy(iface)

    def register(
        self,
        local_path: str | Path,
        contract_address: Optional[str] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> RegistrationResult:
        """
        :param contract_address: 指定すればデプロイせずにそのコントラクトへ書き込む
        :return: 読み戻しで確認済みの RegistrationResult
        :raises PipelineError: 失敗したステージに応じたサブクラス
        """
        address = self._contract_address if contract_address is None else contract_address
        run = RegistrationRun(on_transition)

        # 1. IPFS にアップロード
        run.advance(Stage.UPLOADING)
        try:
            content = self._ipfs_client.upload(local_path)
        except ContentStoreError as ex:
            raise run.fail(UploadError, ex) from ex

        # 2. デプロイ or 既存コントラクト
        run.advance(Stage.DEPLOYING)
        try:
            handle = self._deploy_or_locate(address)
        except LedgerError as ex:
            raise run.fail(DeployError, ex) from ex

        # 3. setIdentifier を送信
        run.advance(Stage.SUBMITTING)
        try:
            tx_hash = self._eth_client.submit_set_identifier(handle, content.cid)
        except LedgerError as ex:
            raise run.fail(SubmitError, ex) from ex
        logger.info("submitted %s(%s) tx %s", handle.interface.setter, content.cid, tx_hash)

        # 4. 確定待ち（receipt を見るまでは書き込み済みとみなさない）
        run.advance(Stage.AWAITING_CONFIRMATION)
        try:
            receipt = self._eth_client.wait_for_receipt(tx_hash)
        except LedgerError as ex:
            raise run.fail(ConfirmError, ex) from ex
        logger.info("tx %s confirmed in block %d", tx_hash, receipt.block_number)

        # 5. 読み戻して一致確認
        run.advance(Stage.VERIFYING_READBACK)
        try:
            stored = self._eth_client.get_identifier(handle)
        except LedgerError as ex:
            raise run.fail(ReadbackError, ex) from ex

        if stored != content.cid:
            failed_at = run.stage
            run.advance(Stage.FAILED)
            logger.error("read-back mismatch at %s: sent %r, got %r", handle.address, content.cid, stored)
            raise VerificationMismatch(failed_at.value, expected=content.cid, actual=stored, history=run.history)

        run.advance(Stage.DONE)
        return RegistrationResult(
            cid=stored,
            contract_address=handle.address,
            deployed=handle.deployed,
            receipt=receipt,
            history=tuple(run.history),
        )
