# ipfs_client.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import httpx

from config import IpfsConfig
from errors import NotFound, StoreUnavailable, UploadFailed
from models import ContentIdentifier


logger = logging.getLogger(__name__)


def _parse_add_response(raw: str) -> dict:
    """
    IPFS /api/v0/add は NDJSON（1行1JSON）を返す。
    最後の有効な JSON オブジェクトに Hash / Size が入っている。
    """
    txt = (raw or "").strip()
    if not txt:
        raise UploadFailed("ipfs add returned an empty response")

    last_obj: Optional[dict] = None
    for line in txt.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if isinstance(obj, dict):
            last_obj = obj

    if last_obj is None:
        raise UploadFailed(f"ipfs add returned a bad response: {txt[:200]}")
    if not str(last_obj.get("Hash") or "").strip():
        raise UploadFailed(f"ipfs add response has no Hash: {last_obj!r}")
    return last_obj


class IpfsClient:
    """
    ローカルファイルを IPFS にアップロードし、CID を返すクラス。

    ファイルはファイルオブジェクトのまま multipart で送るので、
    巨大なファイルでも全体をメモリに読み込まない。
    httpx.Client はスレッドセーフなので、複数パイプラインで共有してよい。
    """

    def __init__(self, config: Optional[IpfsConfig] = None, client: Optional[httpx.Client] = None) -> None:
        self._cfg = config or IpfsConfig()
        self._client = client or httpx.Client(base_url=self._cfg.api_url, timeout=self._cfg.timeout)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "IpfsClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _post(self, endpoint: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.post(endpoint, **kwargs)
        except httpx.TimeoutException as ex:
            raise StoreUnavailable(f"IPFS API timed out: {self._cfg.api_url}") from ex
        except httpx.TransportError as ex:
            raise StoreUnavailable(f"Failed to connect IPFS API: {self._cfg.api_url} ({ex})") from ex
        return resp

    def upload(self, local_path: str | Path) -> ContentIdentifier:
        path = Path(local_path)
        if not path.is_file():
            raise NotFound(f"File not found: {local_path}")

        size = path.stat().st_size
        params = {
            "pin": "true" if self._cfg.pin else "false",
            "cid-version": str(self._cfg.cid_version),
            "wrap-with-directory": "false",
            "progress": "false",
        }

        try:
            fh = path.open("rb")
        except OSError as ex:
            raise NotFound(f"File is not readable: {local_path} ({ex})") from ex

        with fh:
            resp = self._post(
                "/api/v0/add",
                params=params,
                files={"file": (path.name, fh, "application/octet-stream")},
            )

        if resp.status_code < 200 or resp.status_code >= 300:
            # IPFS 側のエラーメッセージがあれば添える
            raise UploadFailed(f"ipfs add failed: http {resp.status_code}: {resp.text.strip()[:300]}")

        obj = _parse_add_response(resp.text)
        cid = str(obj["Hash"]).strip()

        # Size は DAG のサイズなので元ファイル以上になるはず。小さければ途中で切れている
        # （Size を返さない実装もあるので、その場合は確認しない）
        if obj.get("Size") not in (None, ""):
            try:
                reported = int(obj["Size"])
            except (TypeError, ValueError) as ex:
                raise UploadFailed(f"ipfs add returned a bad Size: {obj['Size']!r}") from ex
            if reported < size:
                raise UploadFailed(f"ipfs add looks truncated: sent {size} bytes, store reported {reported}")

        logger.info("uploaded %s (%d bytes) -> %s", path.name, size, cid)
        return ContentIdentifier(cid=cid, name=path.name, size=size)

    def cat(self, cid: str) -> bytes:
        cid = (cid or "").strip()
        if not cid:
            raise ValueError("cid must not be empty")

        resp = self._post("/api/v0/cat", params={"arg": cid})
        if resp.status_code < 200 or resp.status_code >= 300:
            raise NotFound(f"ipfs cat failed for {cid}: http {resp.status_code}: {resp.text.strip()[:300]}")
        return resp.content
