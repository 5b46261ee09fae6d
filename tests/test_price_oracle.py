import json

import httpx
import pytest
from unittest.mock import Mock

from app.services.cache import TTLCache
from app.services.price_oracle import JupiterPriceOracle, SwapQuote, WRAPPED_SOL_MINT

TOKEN = "TokenMint111"
SWAP_API = "https://swap.test/v1"
PRICE_API = "https://price.test/v2"
TOKEN_API = "https://tokens.test/v1"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_oracle(handler, clock=None, sleep=None):
    clock = clock or FakeClock()
    return JupiterPriceOracle(
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        price_cache=TTLCache(30.0, clock=clock),
        token_cache=TTLCache(300.0, clock=clock),
        swap_api=SWAP_API,
        price_api=PRICE_API,
        token_api=TOKEN_API,
        slippage_bps=500,
        sleep=sleep or Mock(),
    )


def test_get_current_price():
    """価格取得テスト"""
    requests = []
    
    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"data": {TOKEN: {"id": TOKEN, "price": "0.0123"}}})
    
    oracle = make_oracle(handler)
    
    assert oracle.get_current_price(TOKEN) == pytest.approx(0.0123)
    assert requests[0].url.params["ids"] == TOKEN


def test_get_current_price_is_cached():
    """TTL内は再取得しない"""
    calls = []
    clock = FakeClock()
    
    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"data": {TOKEN: {"price": 2.0}}})
    
    oracle = make_oracle(handler, clock=clock)
    
    oracle.get_current_price(TOKEN)
    oracle.get_current_price(TOKEN)
    assert len(calls) == 1
    
    clock.now = 31.0
    oracle.get_current_price(TOKEN)
    assert len(calls) == 2


@pytest.mark.parametrize("payload", [
    {"data": {}},
    {"data": {TOKEN: None}},
    {"data": {TOKEN: {"price": None}}},
    {"data": {TOKEN: {"price": "0"}}},
    {"data": {TOKEN: {"price": "abc"}}},
])
def test_get_current_price_missing_returns_none(payload):
    """価格なし・不正値はNone（0にしない）"""
    oracle = make_oracle(lambda request: httpx.Response(200, json=payload))
    
    assert oracle.get_current_price(TOKEN) is None


def test_fetch_retries_with_backoff():
    """3回まで指数バックオフで再試行"""
    sleep = Mock()
    responses = [
        httpx.Response(500),
        httpx.Response(502),
        httpx.Response(200, json={"data": {TOKEN: {"price": 1.0}}}),
    ]
    oracle = make_oracle(lambda request: responses.pop(0), sleep=sleep)
    
    assert oracle.get_current_price(TOKEN) == 1.0
    assert [c.args[0] for c in sleep.call_args_list] == [1, 2]


def test_fetch_exhausted_returns_none():
    """全試行失敗でNone"""
    sleep = Mock()
    oracle = make_oracle(lambda request: httpx.Response(503), sleep=sleep)
    
    assert oracle.get_current_price(TOKEN) is None
    assert sleep.call_count == 2


def test_get_quote():
    """見積もり取得テスト"""
    def handler(request):
        assert request.url.path == "/v1/quote"
        params = request.url.params
        assert params["inputMint"] == TOKEN
        assert params["outputMint"] == WRAPPED_SOL_MINT
        assert params["amount"] == "1000"
        assert params["slippageBps"] == "500"
        return httpx.Response(200, json={
            "inputMint": TOKEN,
            "outputMint": WRAPPED_SOL_MINT,
            "inAmount": "1000",
            "outAmount": "2500",
            "priceImpactPct": "0.01",
        })
    
    oracle = make_oracle(handler)
    
    quote = oracle.get_quote(TOKEN, WRAPPED_SOL_MINT, 1000)
    
    assert quote.in_amount == 1000
    assert quote.out_amount == 2500
    assert quote.price_impact_pct == pytest.approx(0.01)
    assert quote.raw["outAmount"] == "2500"


def test_get_quote_without_route():
    oracle = make_oracle(lambda request: httpx.Response(200, json={"error": "No route"}))
    
    assert oracle.get_quote(TOKEN, WRAPPED_SOL_MINT, 1000) is None


def test_execute_swap():
    """スワップトランザクションを取得してウォレットで送信"""
    bodies = []
    
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/v1/swap"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"swapTransaction": "dHg="})
    
    oracle = make_oracle(handler)
    wallet = Mock()
    wallet.get_address.return_value = "WalletAddress111"
    wallet.send_transaction.return_value = {"hash": "sig-1"}
    quote = SwapQuote(TOKEN, WRAPPED_SOL_MINT, 1000, 2500, raw={"outAmount": "2500"})
    
    result = oracle.execute_swap(quote, wallet)
    
    assert result.txid == "sig-1"
    assert result.input_amount == 1000
    assert result.output_amount == 2500
    wallet.send_transaction.assert_called_once_with("dHg=")
    assert bodies[0]["quoteResponse"] == {"outAmount": "2500"}
    assert bodies[0]["userPublicKey"] == "WalletAddress111"
    assert bodies[0]["wrapAndUnwrapSol"] is True


def test_execute_swap_without_transaction():
    """トランザクション未返却はNone"""
    oracle = make_oracle(lambda request: httpx.Response(200, json={}))
    wallet = Mock()
    wallet.get_address.return_value = "WalletAddress111"
    
    assert oracle.execute_swap(SwapQuote(TOKEN, WRAPPED_SOL_MINT, 1, 1), wallet) is None
    wallet.send_transaction.assert_not_called()


def test_execute_swap_propagates_send_error():
    """送信エラーはリトライ判定のため呼び出し側へ"""
    oracle = make_oracle(lambda request: httpx.Response(200, json={"swapTransaction": "dHg="}))
    wallet = Mock()
    wallet.get_address.return_value = "WalletAddress111"
    wallet.send_transaction.side_effect = RuntimeError("Blockhash not found")
    
    with pytest.raises(RuntimeError):
        oracle.execute_swap(SwapQuote(TOKEN, WRAPPED_SOL_MINT, 1, 1), wallet)


def test_get_token_info():
    """トークン情報取得とキャッシュ"""
    calls = []
    
    def handler(request):
        calls.append(request)
        assert request.url.path == f"/v1/token/{TOKEN}"
        return httpx.Response(200, json={"address": TOKEN, "symbol": "TKN", "name": "Token", "decimals": 6})
    
    oracle = make_oracle(handler)
    
    info = oracle.get_token_info(TOKEN)
    assert info.symbol == "TKN"
    assert info.decimals == 6
    
    oracle.get_token_info(TOKEN)
    assert len(calls) == 1
