from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from milkman_keeper.common import log_event
from milkman_keeper.trading.encoder import DEFAULT_APP_DATA
from milkman_keeper.trading.types import (
    MalformedResponseError,
    OrderPlan,
    Quote,
    SigningScheme,
    Swap,
    TradingApiError,
)

COW_API_BASE_URLS = {
    "mainnet": "https://api.cow.fi/mainnet",
    "goerli": "https://api.cow.fi/goerli",
    "sepolia": "https://api.cow.fi/sepolia",
    "xdai": "https://api.cow.fi/xdai",
    "gnosis": "https://api.cow.fi/xdai",
    "arbitrum_one": "https://api.cow.fi/arbitrum_one",
}
RETRYABLE_STATUSES = {500, 502, 503, 504}


def _preview(text: str, *, limit: int = 240) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _required_int(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if value is None or isinstance(value, bool):
        raise MalformedResponseError(f"quote response is missing {key!r}: {payload}")
    try:
        return int(str(value))
    except ValueError as error:
        raise MalformedResponseError(f"quote response field {key!r} is not an integer: {value!r}") from error


def parse_quote_response(data: Any) -> Quote:
    if not isinstance(data, dict) or not isinstance(data.get("quote"), dict):
        raise MalformedResponseError(f"unexpected quote response: {data!r}")

    quote = data["quote"]
    quote_id = data.get("id")
    return Quote(
        fee_amount=_required_int(quote, "feeAmount"),
        buy_amount_after_fee=_required_int(quote, "buyAmount"),
        valid_to=_required_int(quote, "validTo"),
        sell_amount=_required_int(quote, "sellAmount"),
        quote_id=int(quote_id) if isinstance(quote_id, int) and not isinstance(quote_id, bool) else None,
        raw=data,
    )


def parse_order_uid(data: Any) -> str:
    if isinstance(data, str) and data.startswith("0x"):
        return data
    raise MalformedResponseError(f"unexpected create order response: {data!r}")


class CowApiClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        api_base_url: str,
        app_data: str = DEFAULT_APP_DATA,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self._logger = logger
        self._api_base_url = api_base_url.rstrip("/")
        self._app_data = app_data
        self._timeout_seconds = timeout_seconds
        self._max_retries = max(0, max_retries)
        self._retry_backoff_seconds = max(0.05, retry_backoff_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self._request("GET", "/api/v1/version", expect_json=False)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        expect_json: bool = True,
    ) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise TradingApiError("CoW API HTTP session is not initialized.")

        url = f"{self._api_base_url}{path}"
        max_attempts = self._max_retries + 1
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                async with self._session.request(method, url, json=payload) as response:
                    status = response.status
                    body = await response.text()
            except (aiohttp.ClientError, asyncio.TimeoutError) as error:
                last_error = error
                if attempt < max_attempts:
                    log_event(
                        self._logger,
                        level="warning",
                        event="cow_api_network_retry",
                        message="CoW API request failed; retrying",
                        path=path,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error=str(error),
                    )
                    await asyncio.sleep(self._retry_backoff_seconds * attempt)
                    continue
                raise TradingApiError(f"CoW API request {method} {path} failed: {error}") from error

            if status in RETRYABLE_STATUSES and attempt < max_attempts:
                log_event(
                    self._logger,
                    level="warning",
                    event="cow_api_retry",
                    message="CoW API returned retryable status",
                    path=path,
                    status=status,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    body_preview=_preview(body, limit=200),
                )
                await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue

            if status >= 400:
                error_type = ""
                description = _preview(body, limit=300)
                try:
                    data = json.loads(body)
                    if isinstance(data, dict):
                        error_type = str(data.get("errorType") or "")
                        description = str(data.get("description") or description)
                except json.JSONDecodeError:
                    pass
                raise TradingApiError(
                    f"CoW API {method} {path} failed: status={status} error_type={error_type or 'unknown'} "
                    f"description={description}",
                    status=status,
                    body=body,
                )

            if not expect_json:
                return body
            try:
                return json.loads(body)
            except json.JSONDecodeError as error:
                raise MalformedResponseError(
                    f"CoW API {method} {path} returned non-JSON body: {_preview(body)!r}",
                    status=status,
                    body=body,
                ) from error

        raise TradingApiError(f"CoW API request {method} {path} failed after retries: {last_error}")

    async def get_quote(
        self,
        *,
        order_from: str,
        sell_token: str,
        buy_token: str,
        amount: int,
        receiver: str,
        signing_scheme: SigningScheme = SigningScheme.PRESIGN,
        verification_gas_limit: int | None = None,
    ) -> Quote:
        payload: dict[str, Any] = {
            "sellToken": sell_token,
            "buyToken": buy_token,
            "receiver": receiver,
            "from": order_from,
            "kind": "sell",
            "sellAmountBeforeFee": str(amount),
            "appData": self._app_data,
            "partiallyFillable": False,
            "sellTokenBalance": "erc20",
            "buyTokenBalance": "erc20",
            "priceQuality": "optimal",
            "signingScheme": signing_scheme.value,
            "onchainOrder": False,
        }
        if verification_gas_limit is not None:
            payload["verificationGasLimit"] = int(verification_gas_limit)

        data = await self._request("POST", "/api/v1/quote", payload=payload)
        quote = parse_quote_response(data)
        log_event(
            self._logger,
            level="debug",
            event="cow_quote_received",
            message="Received quote",
            sell_token=sell_token,
            buy_token=buy_token,
            amount=str(amount),
            fee_amount=str(quote.fee_amount),
            buy_amount_after_fee=str(quote.buy_amount_after_fee),
            quote_id=quote.quote_id,
        )
        return quote

    def build_order(
        self,
        swap: Swap,
        plan: OrderPlan,
        *,
        owner: str,
        signing_scheme: SigningScheme,
        signature: str,
    ) -> dict[str, Any]:
        if plan.sell_amount <= 0 or plan.buy_amount <= 0:
            raise ValueError(
                f"order amounts must be positive: sell={plan.sell_amount} buy={plan.buy_amount}"
            )
        order: dict[str, Any] = {
            "sellToken": swap.from_token,
            "buyToken": swap.to_token,
            "receiver": swap.receiver,
            "sellAmount": str(plan.sell_amount),
            "buyAmount": str(plan.buy_amount),
            "validTo": plan.valid_to,
            "appData": self._app_data,
            "feeAmount": str(plan.fee_amount),
            "kind": "sell",
            "partiallyFillable": False,
            "sellTokenBalance": "erc20",
            "buyTokenBalance": "erc20",
            "signingScheme": signing_scheme.value,
            "signature": signature,
            "from": owner,
        }
        if plan.quote.quote_id is not None:
            order["quoteId"] = plan.quote.quote_id
        return order

    async def create_order(self, order: dict[str, Any]) -> str:
        data = await self._request("POST", "/api/v1/orders", payload=order)
        return parse_order_uid(data)
