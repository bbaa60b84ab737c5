#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from milkman_keeper.bot_runtime import AppSettings, setup_logger
from milkman_keeper.chain import EthereumClient
from milkman_keeper.trading import Swap, SwapState, route_discovered_swap

MAX_BLOCK_SPAN = 50_000


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="List Milkman swap requests in a block range together with their current on-chain state."
    )
    parser.add_argument(
        "--from-block",
        type=int,
        default=None,
        help="First block to scan (inclusive). Defaults to STARTING_BLOCK_NUMBER or head - 1000.",
    )
    parser.add_argument(
        "--to-block",
        type=int,
        default=None,
        help="Last block to scan (inclusive). Defaults to the latest block.",
    )
    parser.add_argument(
        "--state",
        choices=[state.name.lower() for state in SwapState],
        action="append",
        default=[],
        help="Only print swaps in this state. Can be repeated.",
    )
    parser.add_argument("--json", action="store_true", help="Print one JSON object per swap.")
    return parser.parse_args(argv)


def summarize_swap(swap: Swap, state: SwapState) -> dict[str, Any]:
    if state == SwapState.NULL:
        next_step = "inconsistent"
    else:
        next_step = route_discovered_swap(state).value
    return {
        "swap_id": swap.swap_id_hex,
        "block_number": swap.block_number,
        "user": swap.user,
        "receiver": swap.receiver,
        "from_token": swap.from_token,
        "to_token": swap.to_token,
        "amount_in": str(swap.amount_in),
        "nonce": swap.nonce,
        "state": state.name.lower(),
        "next_step": next_step,
    }


def format_row(row: dict[str, Any]) -> str:
    return (
        f"{row['swap_id']} block={row['block_number']} state={row['state']} next={row['next_step']} "
        f"{row['amount_in']} {row['from_token']} -> {row['to_token']} receiver={row['receiver']}"
    )


def resolve_range(*, from_block: int | None, to_block: int | None, head: int, default_start: int | None) -> tuple[int, int]:
    end = head if to_block is None else min(to_block, head)
    if from_block is not None:
        start = from_block
    elif default_start is not None:
        start = default_start
    else:
        start = max(0, end - 1000)
    if start > end:
        raise ValueError(f"--from-block {start} is after --to-block {end}")
    if end - start > MAX_BLOCK_SPAN:
        raise ValueError(f"block range {start}..{end} exceeds {MAX_BLOCK_SPAN} blocks; narrow it down")
    return start, end


async def scan(args: argparse.Namespace, app_settings: AppSettings, logger: logging.Logger) -> int:
    chain = EthereumClient(
        logger=logger,
        rpc_url=app_settings.rpc_url,
        private_key=app_settings.keeper_private_key,
        milkman_address=app_settings.milkman_address,
        state_helper_address=app_settings.state_helper_address,
        app_data=app_settings.app_data,
        request_timeout_seconds=app_settings.http_timeout_seconds,
    )
    await chain.connect()
    try:
        head = await chain.get_latest_block_number()
        start, end = resolve_range(
            from_block=args.from_block,
            to_block=args.to_block,
            head=head,
            default_start=app_settings.starting_block_number,
        )
        swaps = await chain.get_requested_swaps(start, end)

        wanted_states = set(args.state)
        printed = 0
        for swap in swaps:
            state = await chain.get_swap_state(swap.swap_id)
            row = summarize_swap(swap, state)
            if wanted_states and row["state"] not in wanted_states:
                continue
            print(json.dumps(row) if args.json else format_row(row))
            printed += 1

        if not args.json:
            print(f"[info] blocks={start}..{end} swaps_seen={len(swaps)} printed={printed}")
        return printed
    finally:
        await chain.close()


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    args = parse_args()
    app_settings = AppSettings.from_env()
    logger = setup_logger(level="WARNING")
    asyncio.run(scan(args, app_settings, logger))


if __name__ == "__main__":
    main()
