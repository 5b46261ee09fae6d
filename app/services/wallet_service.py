import base64
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import base58
import httpx
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from app.core.config import settings
from app.core.exceptions import StaleTransactionError, WalletConfigurationError, WalletRPCError

logger = logging.getLogger(__name__)

STALE_TRANSACTION_MARKERS = (
    "blockhash not found",
    "blockhashnotfound",
    "block height exceeded",
    "transaction expired",
)


def is_stale_transaction_error(error: Any) -> bool:
    """失効したブロックハッシュ等、再署名で回復する種類のエラーか"""
    if isinstance(error, StaleTransactionError):
        return True
    if error is None:
        return False
    lower = str(error).lower()
    return any(marker in lower for marker in STALE_TRANSACTION_MARKERS)


class WalletClient(ABC):
    """ウォレットクライアントの基底クラス"""

    @abstractmethod
    def get_address(self) -> str:
        """ウォレットアドレス"""
        pass

    @abstractmethod
    def send_transaction(self, transaction: str) -> Dict[str, str]:
        """base64トランザクションに署名して送信し {"hash": 署名} を返す"""
        pass

    @abstractmethod
    def get_token_balance(self, mint: str, owner: Optional[str] = None) -> Optional[int]:
        """オンチェーンのトークン残高（生単位）。取得失敗時はNone"""
        pass

    @abstractmethod
    def get_native_balance(self) -> Optional[int]:
        """SOL残高（lamports）。取得失敗時はNone"""
        pass


# === 秘密鍵デコード戦略 ===

def _decode_base58(secret: str) -> bytes:
    return base58.b58decode(secret)


def _decode_base64(secret: str) -> bytes:
    return base64.b64decode(secret, validate=True)


def _decode_hex(secret: str) -> bytes:
    cleaned = secret[2:] if secret.startswith("0x") else secret
    return bytes.fromhex(cleaned)


def _decode_json_array(secret: str) -> bytes:
    values = json.loads(secret)
    if not isinstance(values, list):
        raise ValueError("JSON配列ではありません")
    return bytes(values)


# 先に成功したものを採用する
KEYPAIR_DECODERS: List[Tuple[str, Callable[[str], bytes]]] = [
    ("base58", _decode_base58),
    ("base64", _decode_base64),
    ("hex", _decode_hex),
    ("json", _decode_json_array),
]


def load_keypair(secret: str,
                 decoders: Optional[List[Tuple[str, Callable[[str], bytes]]]] = None) -> Keypair:
    """秘密鍵文字列からKeypairを生成"""
    secret = secret.strip()
    for name, decode in decoders or KEYPAIR_DECODERS:
        try:
            keypair = Keypair.from_bytes(decode(secret))
        except Exception as e:
            logger.debug(f"秘密鍵デコード失敗 ({name}): {type(e).__name__}")
            continue
        logger.info(f"秘密鍵読み込み成功 ({name})")
        return keypair

    raise WalletConfigurationError("秘密鍵の形式が不正です")


def load_keypair_from_file(path: str) -> Keypair:
    """JSONバイト配列形式のウォレットファイルから読み込み"""
    try:
        with open(path, "r", encoding="utf-8") as f:
            secret = f.read()
    except OSError as e:
        raise WalletConfigurationError(f"ウォレットファイルを読み込めません: {path}") from e
    return load_keypair(secret, decoders=[("json", _decode_json_array)])


class SolanaWalletClient(WalletClient):
    """Solana JSON-RPC ウォレットクライアント"""

    def __init__(self,
                 keypair: Keypair,
                 rpc_url: str = None,
                 http_client: Optional[httpx.Client] = None):
        self.keypair = keypair
        self.rpc_url = rpc_url or settings.solana_rpc_url
        self.http_client = http_client or httpx.Client(
            timeout=settings.http_timeout_seconds,
            headers={"Content-Type": "application/json"},
        )

    def _rpc_call(self, method: str, params: Optional[list] = None) -> Any:
        """JSON-RPC呼び出し。エラー応答はWalletRPCErrorを送出"""
        payload = {"jsonrpc": "2.0", "id": 1, "method": method}
        if params:
            payload["params"] = params
        response = self.http_client.post(self.rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            error = body["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if is_stale_transaction_error(message):
                raise StaleTransactionError(message)
            raise WalletRPCError(message)
        return body.get("result")

    def get_address(self) -> str:
        return str(self.keypair.pubkey())

    def send_transaction(self, transaction: str) -> Dict[str, str]:
        unsigned = VersionedTransaction.from_bytes(base64.b64decode(transaction))
        signed = VersionedTransaction(unsigned.message, [self.keypair])
        encoded = base64.b64encode(bytes(signed)).decode("ascii")

        signature = self._rpc_call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "maxRetries": 3}],
        )
        logger.info(f"トランザクション送信: {signature}")
        return {"hash": signature}

    def get_token_balance(self, mint: str, owner: Optional[str] = None) -> Optional[int]:
        owner = owner or self.get_address()
        try:
            result = self._rpc_call(
                "getTokenAccountsByOwner",
                [owner, {"mint": mint}, {"encoding": "jsonParsed"}],
            )
        except (httpx.HTTPError, WalletRPCError, StaleTransactionError) as e:
            logger.error(f"トークン残高取得エラー {mint}: {str(e)}")
            return None

        accounts = (result or {}).get("value") or []
        if not accounts:
            # トークンアカウントなし = 保有なし
            return 0

        try:
            token_amount = accounts[0]["account"]["data"]["parsed"]["info"]["tokenAmount"]
            return int(token_amount["amount"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"トークン残高の解析失敗 {mint}: {str(e)}")
            return None

    def get_native_balance(self) -> Optional[int]:
        try:
            result = self._rpc_call("getBalance", [self.get_address()])
        except (httpx.HTTPError, WalletRPCError) as e:
            logger.error(f"SOL残高取得エラー: {str(e)}")
            return None
        return int((result or {}).get("value", 0))

    def get_slot(self) -> Optional[int]:
        try:
            return self._rpc_call("getSlot")
        except (httpx.HTTPError, WalletRPCError) as e:
            logger.error(f"スロット取得エラー: {str(e)}")
            return None

    def close(self):
        self.http_client.close()


def initialize_wallet(secret: Optional[str] = None,
                      wallet_file: Optional[str] = None,
                      rpc_url: Optional[str] = None) -> SolanaWalletClient:
    """環境変数の秘密鍵、なければウォレットファイルから初期化"""
    secret = secret if secret is not None else settings.solana_private_key
    wallet_file = wallet_file or settings.wallet_file

    if secret:
        keypair = load_keypair(secret)
        logger.info(f"環境変数のウォレットを使用: {keypair.pubkey()}")
    elif os.path.exists(wallet_file):
        keypair = load_keypair_from_file(wallet_file)
        logger.info(f"ウォレットファイルを使用: {keypair.pubkey()}")
    else:
        raise WalletConfigurationError(
            "ウォレットを読み込めません。SOLANA_PRIVATE_KEY またはウォレットファイルを確認してください"
        )

    return SolanaWalletClient(keypair=keypair, rpc_url=rpc_url)
