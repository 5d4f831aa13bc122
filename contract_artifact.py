# contract_artifact.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Tuple

import solcx
from requests.exceptions import RequestException
from solcx.exceptions import SolcError, SolcInstallationError, SolcNotInstalled

from config import ContractConfig
from errors import CompilationFailed


logger = logging.getLogger(__name__)


# 既存コントラクトを使うだけならこの ABI で足りる（デプロイには bytecode が必要）
_MIN_ABI = [
    {
        "inputs": [
            {"internalType": "string", "name": "initial", "type": "string"},
        ],
        "stateMutability": "nonpayable",
        "type": "constructor",
    },
    {
        "inputs": [
            {"internalType": "string", "name": "value", "type": "string"},
        ],
        "name": "setIdentifier",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getIdentifier",
        "outputs": [
            {"internalType": "string", "name": "", "type": "string"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class ContractInterface:
    """
    コントラクトとのやり取りに必要な情報をまとめた値。
    EthereumClient には毎回これを明示的に渡す。
    """

    abi: Tuple[dict, ...]
    bytecode: str = ""
    setter: str = "setIdentifier"
    getter: str = "getIdentifier"
    constructor_args: Tuple[Any, ...] = ("initial value",)

    def function_names(self) -> set:
        return {x.get("name") for x in self.abi if x.get("type") == "function"}

    def validate(self) -> "ContractInterface":
        names = self.function_names()
        missing = [n for n in (self.setter, self.getter) if n not in names]
        if missing:
            raise CompilationFailed(f"ABI does not expose {', '.join(missing)}")
        return self

    def require_bytecode(self) -> str:
        if not self.bytecode:
            raise CompilationFailed("contract bytecode is missing; cannot deploy")
        return self.bytecode


def minimal_interface() -> ContractInterface:
    return ContractInterface(abi=tuple(_MIN_ABI))


def _normalize_bytecode(value: Any) -> str:
    # Hardhat: "0x..." / solc standard json: {"object": "..."}
    if isinstance(value, dict):
        value = value.get("object", "")
    s = str(value or "").strip()
    if s and not s.startswith("0x"):
        s = "0x" + s
    return s


def load_artifact(path: str | Path) -> ContractInterface:
    """
    コンパイル済み JSON を読む。対応形式:
      - Hardhat / Truffle: {"abi": [...], "bytecode": "0x..."}
      - solc standard json の1コントラクト分: {"abi": [...], "evm": {"bytecode": {"object": "..."}}}
      - ABI だけの配列（デプロイ不可、既存アドレス用）
    """
    p = Path(path)
    if not p.is_file():
        raise CompilationFailed(f"Contract artifact not found: {path}")

    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError) as ex:
        raise CompilationFailed(f"Contract artifact is not valid JSON: {path} ({ex})") from ex

    if isinstance(obj, list):
        abi, bytecode = obj, ""
    elif isinstance(obj, dict) and isinstance(obj.get("abi"), list):
        abi = obj["abi"]
        if "bytecode" in obj:
            bytecode = _normalize_bytecode(obj["bytecode"])
        else:
            bytecode = _normalize_bytecode(obj.get("evm", {}).get("bytecode", ""))
    else:
        raise CompilationFailed(f"Contract artifact has no abi: {path}")

    logger.debug("loaded artifact %s (bytecode=%s)", p, "yes" if bytecode else "no")
    return ContractInterface(abi=tuple(abi), bytecode=bytecode).validate()


def compile_source(path: str | Path, contract_name: str, solc_version: str) -> ContractInterface:
    """.sol を py-solc-x でコンパイルする。必要なら solc 本体もインストールする。"""
    p = Path(path)
    if not p.is_file():
        raise CompilationFailed(f"Contract source not found: {path}")

    try:
        if solc_version not in {str(v) for v in solcx.get_installed_solc_versions()}:
            logger.info("installing solc %s", solc_version)
            solcx.install_solc(solc_version)
        compiled = solcx.compile_files(
            [str(p)],
            output_values=["abi", "bin"],
            solc_version=solc_version,
        )
    except (SolcError, SolcInstallationError, SolcNotInstalled) as ex:
        raise CompilationFailed(f"solc failed for {p.name}: {ex}") from ex
    except (RequestException, OSError, ValueError) as ex:
        # solc のダウンロードや起動に失敗した
        raise CompilationFailed(f"solc {solc_version} unavailable: {type(ex).__name__}: {ex}") from ex

    # キーは "<path>:<ContractName>"
    for key, out in compiled.items():
        if key.rsplit(":", 1)[-1] == contract_name:
            logger.info("compiled %s from %s with solc %s", contract_name, p.name, solc_version)
            return ContractInterface(
                abi=tuple(out["abi"]),
                bytecode=_normalize_bytecode(out.get("bin", "")),
            ).validate()

    raise CompilationFailed(f"Contract {contract_name} not found in {p.name}")


def resolve_interface(cfg: ContractConfig, *, need_bytecode: bool) -> ContractInterface:
    """
    artifact が指定されていればそれを、無ければソースをコンパイルする。
    既存アドレスを使うだけなら（need_bytecode=False）最小 ABI で済ませる。
    """
    if cfg.artifact_path:
        iface = load_artifact(cfg.artifact_path)
    elif not need_bytecode:
        return minimal_interface()
    else:
        iface = compile_source(cfg.source_path, cfg.contract_name, cfg.solc_version)

    if need_bytecode:
        iface.require_bytecode()
    return iface
