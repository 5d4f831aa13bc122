# app.py
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request
from werkzeug.utils import secure_filename

from config import ConfigError, ContractConfig, IpfsConfig, load_settings
from contract_artifact import resolve_interface
from errors import (
    ContractNotFound,
    NetworkUnavailable,
    NotFound,
    PipelineError,
    RegistrationError,
    StoreUnavailable,
    VerificationMismatch,
)
from eth_client import EthereumClient
from ipfs_client import IpfsClient
from registrar import FileRegistrar


load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)


def build_ipfs_client() -> IpfsClient:
    return IpfsClient(IpfsConfig.from_env())


def build_eth_client() -> EthereumClient:
    # リクエストごとに .env / 環境変数から作り直す
    return EthereumClient(load_settings().eth)


def build_registrar(ipfs_client: IpfsClient, eth_client: EthereumClient) -> FileRegistrar:
    return FileRegistrar(
        ipfs_client,
        eth_client,
        contract_config=ContractConfig.from_env(),
        contract_address=(os.getenv("ETH_CONTRACT_ADDRESS") or "").strip(),
    )


@app.errorhandler(ConfigError)
def config_error(ex):
    return jsonify({"error": "config", "message": str(ex)}), 500


@app.errorhandler(PipelineError)
def pipeline_error(ex: PipelineError):
    if isinstance(ex, VerificationMismatch):
        status = 409
    elif isinstance(ex.cause, NotFound):
        status = 400
    else:
        status = 502

    body = {
        "error": ex.kind,
        "stage": ex.stage,
        "message": str(ex),
        "history": list(ex.history),
    }
    if isinstance(ex, VerificationMismatch):
        body["expected"] = ex.expected
        body["actual"] = ex.actual
    return jsonify(body), status


@app.errorhandler(RegistrationError)
def registration_error(ex: RegistrationError):
    if isinstance(ex, (ContractNotFound, NotFound)):
        status = 404
    elif isinstance(ex, (NetworkUnavailable, StoreUnavailable)):
        status = 502
    else:
        status = 500
    return jsonify({"error": type(ex).__name__, "message": str(ex)}), status


@app.route("/register", methods=["POST"])
def register():
    file = request.files.get("file")
    if file is None or file.filename == "":
        return jsonify({"error": "bad_request", "message": "no file selected"}), 400

    contract_address = (request.form.get("contract") or "").strip() or None

    eth_client = build_eth_client()
    ipfs_client = build_ipfs_client()
    try:
        registrar = build_registrar(ipfs_client, eth_client)
        # registrar はパスを受け取るので、一度一時ディレクトリに保存する
        with tempfile.TemporaryDirectory() as tmp:
            local_path = Path(tmp) / (secure_filename(file.filename) or "upload")
            file.save(str(local_path))
            result = registrar.register(local_path, contract_address=contract_address)
    finally:
        ipfs_client.close()

    return jsonify({
        "cid": result.cid,
        "contractAddress": result.contract_address,
        "deployed": result.deployed,
        "txHash": result.receipt.tx_hash,
        "blockNumber": result.receipt.block_number,
        "history": list(result.history),
    })


@app.route("/contracts/<address>/identifier")
def contract_identifier(address: str):
    eth_client = build_eth_client()
    iface = resolve_interface(ContractConfig.from_env(), need_bytecode=False)
    handle = eth_client.locate(address, iface)
    return jsonify({"contractAddress": handle.address, "cid": eth_client.get_identifier(handle)})


@app.route("/ipfs/<cid>")
def ipfs_content(cid: str):
    ipfs_client = build_ipfs_client()
    try:
        data = ipfs_client.cat(cid)
    finally:
        ipfs_client.close()
    return Response(data, mimetype="application/octet-stream")


@app.route("/account")
def account():
    return jsonify(build_eth_client().account_info())


if __name__ == "__main__":
    app.run(debug=True)
