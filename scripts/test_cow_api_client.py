from __future__ import annotations

import json
import logging
import unittest
from typing import Any

from aiohttp import test_utils, web
from keeper_fakes import MILKMAN, make_quote, make_swap

from milkman_keeper.cow import CowApiClient, parse_order_uid, parse_quote_response
from milkman_keeper.trading import (
    FeeModel,
    MalformedResponseError,
    SigningScheme,
    SwapPricingEngine,
    TradingApiError,
)
from milkman_keeper.trading.encoder import DEFAULT_APP_DATA

QUOTE_BODY = {
    "quote": {
        "sellToken": "0x" + "33" * 20,
        "buyToken": "0x" + "44" * 20,
        "sellAmount": "9900",
        "buyAmount": "20000",
        "feeAmount": "100",
        "validTo": 1_700_000_600,
        "kind": "sell",
    },
    "from": MILKMAN,
    "expiration": "2023-11-14T22:13:20Z",
    "id": 4242,
}


class ParseResponseTests(unittest.TestCase):
    def test_quote_fields_are_parsed_as_integers(self) -> None:
        quote = parse_quote_response(QUOTE_BODY)

        self.assertEqual(quote.fee_amount, 100)
        self.assertEqual(quote.buy_amount_after_fee, 20_000)
        self.assertEqual(quote.sell_amount, 9_900)
        self.assertEqual(quote.valid_to, 1_700_000_600)
        self.assertEqual(quote.quote_id, 4242)

    def test_quote_missing_fields_is_malformed(self) -> None:
        broken = {"quote": {key: value for key, value in QUOTE_BODY["quote"].items() if key != "buyAmount"}}
        for data in (None, [], {"id": 1}, {"quote": "x"}, broken, {"quote": {**QUOTE_BODY["quote"], "feeAmount": "1e3"}}):
            with self.subTest(data=data):
                with self.assertRaises(MalformedResponseError):
                    parse_quote_response(data)

    def test_order_uid_must_be_hex_string(self) -> None:
        self.assertEqual(parse_order_uid("0xabc"), "0xabc")
        for data in ({"uid": "0xabc"}, "abc", None):
            with self.subTest(data=data):
                with self.assertRaises(MalformedResponseError):
                    parse_order_uid(data)


class CowApiClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.responses: dict[str, list[tuple[int, str]]] = {}
        self.requests: list[tuple[str, dict[str, Any] | None]] = []

        async def handler(request: web.Request) -> web.Response:
            payload = await request.json() if request.can_read_body else None
            self.requests.append((request.path, payload))
            scripted = self.responses.get(request.path) or [(404, '{"errorType":"NotFound"}')]
            status, body = scripted.pop(0) if len(scripted) > 1 else scripted[0]
            return web.Response(status=status, text=body, content_type="application/json")

        app = web.Application()
        app.router.add_route("*", "/api/v1/{tail:.*}", handler)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()

        self.client = CowApiClient(
            logger=logging.getLogger("test.cow"),
            api_base_url=str(self.server.make_url("/")),
            timeout_seconds=5,
            max_retries=2,
            retry_backoff_seconds=0.01,
        )
        await self.client.connect()

    async def asyncTearDown(self) -> None:
        await self.client.close()
        await self.server.close()

    async def _quote(self, **kwargs: Any):
        return await self.client.get_quote(
            order_from=MILKMAN,
            sell_token="0x" + "33" * 20,
            buy_token="0x" + "44" * 20,
            amount=10_000,
            receiver="0x" + "22" * 20,
            **kwargs,
        )

    async def test_get_quote_posts_sell_order_request(self) -> None:
        self.responses["/api/v1/quote"] = [(200, json.dumps(QUOTE_BODY))]

        quote = await self._quote()

        self.assertEqual(quote.fee_amount, 100)
        path, payload = self.requests[0]
        self.assertEqual(path, "/api/v1/quote")
        self.assertEqual(payload["kind"], "sell")
        self.assertEqual(payload["sellAmountBeforeFee"], "10000")
        self.assertEqual(payload["from"], MILKMAN)
        self.assertEqual(payload["appData"], DEFAULT_APP_DATA)
        self.assertEqual(payload["signingScheme"], "presign")
        self.assertNotIn("verificationGasLimit", payload)

    async def test_get_quote_uses_requested_signing_scheme(self) -> None:
        self.responses["/api/v1/quote"] = [(200, json.dumps(QUOTE_BODY))]

        await self._quote(signing_scheme=SigningScheme.EIP1271)
        await self._quote(signing_scheme=SigningScheme.EIP1271, verification_gas_limit=110_000)

        without_gas, with_gas = (payload for _, payload in self.requests)
        self.assertEqual(without_gas["signingScheme"], "eip1271")
        self.assertNotIn("verificationGasLimit", without_gas)
        self.assertEqual(with_gas["signingScheme"], "eip1271")
        self.assertEqual(with_gas["verificationGasLimit"], 110_000)

    async def test_server_errors_are_retried(self) -> None:
        self.responses["/api/v1/quote"] = [
            (503, "unavailable"),
            (502, "bad gateway"),
            (200, json.dumps(QUOTE_BODY)),
        ]

        quote = await self._quote()

        self.assertEqual(quote.quote_id, 4242)
        self.assertEqual(len(self.requests), 3)

    async def test_retries_are_bounded(self) -> None:
        self.responses["/api/v1/quote"] = [(500, "down")]

        with self.assertRaises(TradingApiError) as context:
            await self._quote()

        self.assertEqual(context.exception.status, 500)
        self.assertEqual(len(self.requests), 3)

    async def test_client_errors_are_not_retried(self) -> None:
        self.responses["/api/v1/quote"] = [
            (400, json.dumps({"errorType": "NoLiquidity", "description": "no route found"})),
        ]

        with self.assertRaises(TradingApiError) as context:
            await self._quote()

        self.assertNotIsInstance(context.exception, MalformedResponseError)
        self.assertEqual(context.exception.status, 400)
        self.assertIn("NoLiquidity", str(context.exception))
        self.assertEqual(len(self.requests), 1)

    async def test_non_json_success_body_is_malformed(self) -> None:
        self.responses["/api/v1/quote"] = [(200, "<html>maintenance</html>")]

        with self.assertRaises(MalformedResponseError):
            await self._quote()

    async def test_create_order_returns_uid(self) -> None:
        uid = "0x" + "ab" * 56
        self.responses["/api/v1/orders"] = [(201, json.dumps(uid))]
        order = {"sellToken": "0x" + "33" * 20}

        self.assertEqual(await self.client.create_order(order), uid)
        self.assertEqual(self.requests[0], ("/api/v1/orders", order))

    async def test_healthcheck_reads_version(self) -> None:
        self.responses["/api/v1/version"] = [(200, '"v2.250.0"')]

        await self.client.healthcheck()

        self.assertEqual(self.requests[0][0], "/api/v1/version")

    async def test_unreachable_api_raises_trading_error(self) -> None:
        client = CowApiClient(
            logger=logging.getLogger("test.cow"),
            api_base_url="http://127.0.0.1:9",
            timeout_seconds=1,
            max_retries=1,
            retry_backoff_seconds=0.01,
        )
        try:
            with self.assertRaises(TradingApiError):
                await client.healthcheck()
        finally:
            await client.close()


class BuildOrderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = CowApiClient(logger=logging.getLogger("test.cow"), api_base_url="https://api.cow.fi/mainnet")
        self.swap = make_swap(1)

    def _plan(self, fee_model: FeeModel = FeeModel.INCLUDED, **quote_kwargs: int):
        engine = SwapPricingEngine(slippage_bps=50, order_validity_seconds=86_400, fee_model=fee_model)
        return engine.plan(swap=self.swap, quote=make_quote(**quote_kwargs), chain_timestamp=1_700_000_000)

    def test_presign_order_fields(self) -> None:
        order = self.client.build_order(
            self.swap,
            self._plan(),
            owner=MILKMAN,
            signing_scheme=SigningScheme.PRESIGN,
            signature=MILKMAN,
        )

        self.assertEqual(
            order,
            {
                "sellToken": self.swap.from_token,
                "buyToken": self.swap.to_token,
                "receiver": self.swap.receiver,
                "sellAmount": "10000",
                "buyAmount": "19900",
                "validTo": 1_700_086_400,
                "appData": DEFAULT_APP_DATA,
                "feeAmount": "0",
                "kind": "sell",
                "partiallyFillable": False,
                "sellTokenBalance": "erc20",
                "buyTokenBalance": "erc20",
                "signingScheme": "presign",
                "signature": MILKMAN,
                "from": MILKMAN,
                "quoteId": 7,
            },
        )

    def test_zero_buy_amount_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.client.build_order(
                self.swap,
                self._plan(buy_amount_after_fee=1),
                owner=MILKMAN,
                signing_scheme=SigningScheme.PRESIGN,
                signature=MILKMAN,
            )


if __name__ == "__main__":
    unittest.main()
