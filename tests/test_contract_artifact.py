from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests
from solcx.exceptions import SolcNotInstalled

from config import ContractConfig
from contract_artifact import (
    _MIN_ABI,
    ContractInterface,
    compile_source,
    load_artifact,
    minimal_interface,
    resolve_interface,
)
from errors import CompilationFailed


def _write(tmp_path: Path, obj, name="artifact.json") -> Path:
    p = tmp_path / name
    p.write_text(json.dumps(obj), encoding="utf-8")
    return p


def test_minimal_interface_has_two_methods():
    iface = minimal_interface()
    assert iface.function_names() == {"setIdentifier", "getIdentifier"}
    assert iface.bytecode == ""
    assert iface.constructor_args == ("initial value",)


def test_load_hardhat_artifact(tmp_path):
    p = _write(tmp_path, {"contractName": "CidStorage", "abi": _MIN_ABI, "bytecode": "0x6080"})
    iface = load_artifact(p)

    assert iface.bytecode == "0x6080"
    assert iface.require_bytecode() == "0x6080"


def test_load_solc_standard_output(tmp_path):
    p = _write(tmp_path, {"abi": _MIN_ABI, "evm": {"bytecode": {"object": "6080"}}})
    assert load_artifact(p).bytecode == "0x6080"


def test_load_abi_only_artifact(tmp_path):
    iface = load_artifact(_write(tmp_path, _MIN_ABI))

    assert iface.bytecode == ""
    with pytest.raises(CompilationFailed):
        iface.require_bytecode()


def test_missing_artifact(tmp_path):
    with pytest.raises(CompilationFailed, match="not found"):
        load_artifact(tmp_path / "nope.json")


def test_unparseable_artifact(tmp_path):
    p = tmp_path / "broken.json"
    p.write_text("{not json", encoding="utf-8")
    with pytest.raises(CompilationFailed, match="not valid JSON"):
        load_artifact(p)


def test_artifact_without_abi(tmp_path):
    with pytest.raises(CompilationFailed, match="no abi"):
        load_artifact(_write(tmp_path, {"bytecode": "0x6080"}))


def test_artifact_missing_getter(tmp_path):
    abi = [x for x in _MIN_ABI if x.get("name") != "getIdentifier"]
    with pytest.raises(CompilationFailed, match="getIdentifier"):
        load_artifact(_write(tmp_path, {"abi": abi, "bytecode": "0x6080"}))


def test_resolve_without_artifact_for_existing_contract():
    iface = resolve_interface(ContractConfig(artifact_path=""), need_bytecode=False)
    assert iface == minimal_interface()


def test_resolve_abi_only_artifact_cannot_deploy(tmp_path):
    cfg = ContractConfig(artifact_path=str(_write(tmp_path, _MIN_ABI)))

    assert resolve_interface(cfg, need_bytecode=False).bytecode == ""
    with pytest.raises(CompilationFailed):
        resolve_interface(cfg, need_bytecode=True)


def test_resolve_compiles_source_when_no_artifact(monkeypatch, tmp_path):
    calls = []

    def fake_compile(path, name, version):
        calls.append((path, name, version))
        return ContractInterface(abi=tuple(_MIN_ABI), bytecode="0xfeed")

    monkeypatch.setattr("contract_artifact.compile_source", fake_compile)
    cfg = ContractConfig(source_path=str(tmp_path / "C.sol"), contract_name="C", solc_version="0.8.24")

    assert resolve_interface(cfg, need_bytecode=True).bytecode == "0xfeed"
    assert calls == [(str(tmp_path / "C.sol"), "C", "0.8.24")]


def test_compile_missing_source(tmp_path):
    with pytest.raises(CompilationFailed, match="source not found"):
        compile_source(tmp_path / "missing.sol", "CidStorage", "0.8.24")


def test_compile_picks_named_contract(monkeypatch, tmp_path):
    src = tmp_path / "CidStorage.sol"
    src.write_text("// stub", encoding="utf-8")

    monkeypatch.setattr("solcx.get_installed_solc_versions", lambda: ["0.8.24"])
    monkeypatch.setattr(
        "solcx.compile_files",
        lambda files, output_values, solc_version: {
            f"{src}:Other": {"abi": [], "bin": "00"},
            f"{src}:CidStorage": {"abi": _MIN_ABI, "bin": "6080"},
        },
    )

    iface = compile_source(src, "CidStorage", "0.8.24")
    assert iface.bytecode == "0x6080"


def test_compile_unknown_contract_name(monkeypatch, tmp_path):
    src = tmp_path / "CidStorage.sol"
    src.write_text("// stub", encoding="utf-8")

    monkeypatch.setattr("solcx.get_installed_solc_versions", lambda: ["0.8.24"])
    monkeypatch.setattr("solcx.compile_files", lambda *a, **kw: {f"{src}:Other": {"abi": _MIN_ABI, "bin": "00"}})

    with pytest.raises(CompilationFailed, match="CidStorage not found"):
        compile_source(src, "CidStorage", "0.8.24")


@pytest.mark.parametrize(
    "error",
    [
        SolcNotInstalled("solc 0.8.24 is not installed"),
        requests.exceptions.ConnectionError("binaries.soliditylang.org unreachable"),
        PermissionError("solc-v0.8.24 is not executable"),
    ],
)
def test_compile_toolchain_failure_is_compilation_failed(monkeypatch, tmp_path, error):
    src = tmp_path / "CidStorage.sol"
    src.write_text("// stub", encoding="utf-8")

    def broken(*args, **kwargs):
        raise error

    monkeypatch.setattr("solcx.get_installed_solc_versions", lambda: ["0.8.24"])
    monkeypatch.setattr("solcx.compile_files", broken)

    with pytest.raises(CompilationFailed, match="0.8.24"):
        compile_source(src, "CidStorage", "0.8.24")
