# errors.py
from __future__ import annotations

from typing import Optional, Sequence


class RegistrationError(Exception):
    """このリポジトリで扱う外部システム由来のエラーの基底。"""


# --- Content store (IPFS) ---

class ContentStoreError(RegistrationError):
    pass


class NotFound(ContentStoreError):
    """アップロード対象のパスが読み取り可能なファイルではない。"""


class StoreUnavailable(ContentStoreError):
    """IPFS API に接続できない・タイムアウトした。"""


class UploadFailed(ContentStoreError):
    """ストアがアップロードを拒否した、または応答が壊れている。"""


# --- Ledger (Ethereum) ---

class LedgerError(RegistrationError):
    pass


class CompilationFailed(LedgerError):
    pass


class DeploymentRejected(LedgerError):
    pass


class ConfirmationTimeout(LedgerError):
    pass


class SigningFailed(LedgerError):
    pass


class TransactionRejected(LedgerError):
    pass


class ExecutionReverted(LedgerError):
    pass


class NetworkUnavailable(LedgerError):
    pass


class ContractNotFound(LedgerError):
    pass


# --- Pipeline stage errors ---

class PipelineError(RegistrationError):
    """
    どのステージで失敗したかを保持するエラー。
    原因となった例外は __cause__ と cause の両方から辿れる。
    """

    kind = "PipelineError"

    def __init__(
        self,
        stage: str,
        cause: Optional[BaseException] = None,
        history: Sequence[str] = (),
        message: Optional[str] = None,
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.history = tuple(history)
        detail = message or (f"{type(cause).__name__}: {cause}" if cause is not None else "")
        super().__init__(f"{self.kind} at stage {stage}: {detail}")


class UploadError(PipelineError):
    kind = "UploadError"


class DeployError(PipelineError):
    kind = "DeployError"


class SubmitError(PipelineError):
    kind = "SubmitError"


class ConfirmError(PipelineError):
    kind = "ConfirmError"


class ReadbackError(PipelineError):
    kind = "ReadbackError"


class VerificationMismatch(PipelineError):
    """
    receipt は成功したのに読み戻した値が送った値と違う。
    インフラ障害ではなくデータ整合性の問題なので他と区別する。
    """

    kind = "VerificationMismatch"

    def __init__(self, stage: str, expected: str, actual: str, history: Sequence[str] = ()) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            stage,
            history=history,
            message=f"expected {expected!r}, contract returned {actual!r}",
        )
