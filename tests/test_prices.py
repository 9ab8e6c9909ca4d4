from decimal import Decimal

import httpx
import pytest

from crypto_crash.exceptions import InvalidInput, PriceUnavailable
from crypto_crash.prices import PriceOracle, crypto_to_usd, usd_to_crypto


class Upstream:
    """Scripted CoinGecko: each request pops the next response."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def quote(coin, price):
    return httpx.Response(200, json={coin: {"usd": price}})


class Ticker:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def make_oracle(upstream, ticker=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return PriceOracle(
        client=client,
        base_url="https://prices.test/api/v3",
        clock=ticker or Ticker(),
        **kwargs,
    )


async def test_fetches_and_caches_within_window():
    upstream = Upstream(quote("bitcoin", 60000))
    oracle = make_oracle(upstream, api_key="")

    assert await oracle.get_price("btc") == Decimal("60000")
    assert await oracle.get_price("BTC") == Decimal("60000")

    assert len(upstream.requests) == 1
    request = upstream.requests[0]
    assert request.url.path == "/api/v3/simple/price"
    assert request.url.params["ids"] == "bitcoin"
    assert request.url.params["vs_currencies"] == "usd"
    assert "x_cg_demo_api_key" not in request.url.params


async def test_refetches_after_window():
    ticker = Ticker()
    upstream = Upstream(quote("ethereum", 3000), quote("ethereum", 3100.5))
    oracle = make_oracle(upstream, ticker, cache_seconds=10)

    assert await oracle.get_price("eth") == Decimal("3000")
    ticker.t = 10.5
    assert await oracle.get_price("eth") == Decimal("3100.5")
    assert len(upstream.requests) == 2


async def test_api_key_is_sent():
    upstream = Upstream(quote("bitcoin", 1))
    oracle = make_oracle(upstream, api_key="demo-key")
    await oracle.get_price("btc")
    assert upstream.requests[0].url.params["x_cg_demo_api_key"] == "demo-key"


@pytest.mark.parametrize(
    "failure",
    [
        httpx.Response(500, text="boom"),
        httpx.ReadTimeout("slow upstream"),
        httpx.Response(200, json={"bitcoin": {"usd": 0}}),
        httpx.Response(200, json={"bitcoin": {"usd": -5}}),
        httpx.Response(200, json={"bitcoin": {"usd": "NaN"}}),
        httpx.Response(200, json={"bitcoin": {}}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_stale_price_served_on_failure(failure):
    ticker = Ticker()
    upstream = Upstream(quote("bitcoin", 60000), failure)
    oracle = make_oracle(upstream, ticker, cache_seconds=10)

    await oracle.get_price("btc")
    ticker.t = 60
    assert await oracle.get_price("btc") == Decimal("60000")
    assert oracle.cached_price("btc") == Decimal("60000")


async def test_no_cache_means_unavailable():
    upstream = Upstream(httpx.ConnectError("down"))
    oracle = make_oracle(upstream)
    with pytest.raises(PriceUnavailable):
        await oracle.get_price("btc")


async def test_invalid_price_without_cache_is_unavailable():
    upstream = Upstream(httpx.Response(200, json={"bitcoin": {"usd": 0}}))
    oracle = make_oracle(upstream)
    with pytest.raises(PriceUnavailable):
        await oracle.get_price("btc")
    assert oracle.cached_price("btc") is None


async def test_unsupported_currency():
    oracle = make_oracle(Upstream())
    with pytest.raises(InvalidInput):
        await oracle.get_price("doge")


def test_conversion():
    assert usd_to_crypto(Decimal("10"), Decimal("60000")) == Decimal("10") / Decimal("60000")
    assert crypto_to_usd(Decimal("0.0005"), Decimal("60000")) == Decimal("30.0000")

    with pytest.raises(InvalidInput):
        usd_to_crypto(Decimal("0"), Decimal("60000"))
    with pytest.raises(InvalidInput):
        usd_to_crypto(Decimal("10"), Decimal("0"))
    with pytest.raises(InvalidInput):
        crypto_to_usd(Decimal("-1"), Decimal("60000"))
