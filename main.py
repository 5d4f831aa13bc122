# main.py
from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from config import ConfigError, load_settings
from errors import PipelineError, RegistrationError, VerificationMismatch
from eth_client import EthereumClient
from ipfs_client import IpfsClient
from models import Stage
from registrar import FileRegistrar


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_CONFIG = 3  # argparse itself exits with 2
EXIT_MISMATCH = 4


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="cid-register",
        description="Upload a file to IPFS and record its CID in a smart contract.",
    )
    ap.add_argument("file_path", help="file to upload")
    ap.add_argument(
        "--contract",
        default=None,
        help="existing contract address (default: deploy a new one, or ETH_CONTRACT_ADDRESS)",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return ap


def _print_progress(prev: Stage, stage: Stage) -> None:
    # 結果表示は stdout なので、進捗は stderr に出す
    print(f"[{stage.value}]", file=sys.stderr, flush=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ConfigError as ex:
        print(f"config error: {ex}", file=sys.stderr)
        return EXIT_CONFIG

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        eth_client = EthereumClient(settings.eth)
    except RegistrationError as ex:
        print(f"config error: {ex}", file=sys.stderr)
        return EXIT_CONFIG

    logger.debug("signer %s, rpc %s", eth_client.address, settings.eth.rpc_url)

    with IpfsClient(settings.ipfs) as ipfs_client:
        registrar = FileRegistrar(
            ipfs_client,
            eth_client,
            contract_config=settings.contract,
            contract_address=settings.eth.contract_address,
        )
        try:
            result = registrar.register(
                args.file_path,
                contract_address=args.contract,
                on_transition=_print_progress,
            )
        except VerificationMismatch as ex:
            print(f"verification failed at stage {ex.stage}: {ex}", file=sys.stderr)
            return EXIT_MISMATCH
        except PipelineError as ex:
            print(f"registration failed: {ex}", file=sys.stderr)
            return EXIT_STAGE_FAILED

    print("=== IPFS ===")
    print("  CID      :", result.cid)
    print("=== Ethereum ===")
    print("  Contract :", result.contract_address, "(deployed)" if result.deployed else "(existing)")
    print("  Tx Hash  :", result.receipt.tx_hash)
    print("  Block    :", result.receipt.block_number)
    print(f"CID in smart contract: {result.cid}.")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
