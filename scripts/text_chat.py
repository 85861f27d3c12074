#!/usr/bin/env python3
"""
Text chat harness.

Talks to the cashier from a terminal: real model, in-memory order store,
speech off. Useful for prompt and receipt checks without a browser.

Usage:
  python scripts/text_chat.py

Commands:
  /new     start a new order
  /modify  modify the completed order
  /quit    exit
"""

from __future__ import annotations

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.cashier.config import ConfigError, init_config
from src.cashier.controller import ControllerEvent, TurnController
from src.cashier.llm import CashierLLM
from src.cashier.orders import InMemoryOrderStore
from src.cashier.tts import AudioOutput, SpeechPlayer


class SilentOutput(AudioOutput):
    async def play(self, audio: bytes, mime_type: str) -> None:
        return None

    async def stop(self) -> None:
        return None


def print_cashier(text: str) -> None:
    print(f"\ncashier> {text}")


async def on_event(event: ControllerEvent) -> None:
    payload = event.payload

    if event.type == "turn_added" and not payload.get("streaming"):
        turn = payload["turn"]
        if turn["role"] == "cashier":
            print_cashier(turn["text"])

    elif event.type == "turn_finalized":
        turn = payload["turn"]
        print_cashier(turn["text"])
        receipt = turn.get("receipt")
        if receipt:
            print(f"  [receipt] {receipt['type']} for {receipt.get('customer_name') or 'guest'}")
            for item in receipt["items"]:
                print(f"    - {item['size']} {item['temp']} {item['item_name']}  ${item['item_price']}")
            print(f"    total ${receipt['total_price']}  order #{turn.get('order_number') or '?'}")


async def main() -> int:
    try:
        config = init_config()
    except ConfigError as e:
        print(f"[ERR] {e}")
        return 1

    store = InMemoryOrderStore()
    controller = TurnController(
        llm=CashierLLM(config),
        player=SpeechPlayer(None, SilentOutput()),
        store=store,
        config=config,
        on_event=on_event,
    )
    await controller.start(voice_mode=False)

    while True:
        try:
            line = (await asyncio.to_thread(input, "\nyou> ")).strip()
        except (EOFError, KeyboardInterrupt):
            break

        if not line:
            continue
        if line == "/quit":
            break
        if line == "/new":
            await controller.new_order()
            continue
        if line == "/modify":
            if not await controller.modify_order():
                print("  [WARN] nothing to modify yet")
            continue

        task = await controller.submit_input(line)
        if task is not None:
            await task

    await controller.close()
    await store.close()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
