"""
Play one quick match between two bots against a running server.

    python scripts/simulate_duel.py [ws://localhost:3000/ws]

Both bots pick sides at random. Prints every frame either bot receives.
"""

import asyncio
import os
import random
import sys

import orjson as json
import websockets

# Add the project root to the Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, project_root)

from coinduel.core.security import SESSION_COOKIE, sign_session

SIDES = ("heads", "tails")


async def bot(uri: str, username: str, rounds: int, bet: int):
    headers = {"Cookie": f"{SESSION_COOKIE}={sign_session(username)}"}
    async with websockets.connect(uri, additional_headers=headers) as ws:
        await ws.send(json.dumps({"type": "quick_match", "rounds": rounds, "betAmount": bet}).decode())
        match_id = None

        async for raw in ws:
            event = json.loads(raw)
            print(f"[{username}] {event['type']}: {event}")

            if event["type"] == "error":
                return
            if event["type"] == "match_started":
                match_id = event["matchId"]
            if event["type"] in ("match_started", "next_round") and event.get("yourTurn"):
                await ws.send(json.dumps({"type": "make_call", "matchId": match_id, "prediction": random.choice(SIDES)}).decode())
            elif event["type"] == "opponent_called":
                await ws.send(json.dumps({"type": "make_prediction", "matchId": match_id, "prediction": random.choice(SIDES)}).decode())
            elif event["type"] == "match_ended":
                return


async def main(uri: str):
    first = asyncio.create_task(bot(uri, "sim-alice", 3, 10))
    # Let the first bot reach the queue so it sets the match terms
    await asyncio.sleep(0.5)
    await asyncio.gather(first, bot(uri, "sim-bob", 3, 10))


if __name__ == "__main__":
    print("Running duel simulation...")
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:3000/ws"))
    print("Simulation finished.")
