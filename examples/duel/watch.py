import argparse
import asyncio
import os

import logging

from dotenv import load_dotenv

from vgame import Coordinator
from vgame.web3ledger import connect

from toyvm import ToyVM, fragment_commitment

logging.basicConfig(filename='vgame-cli.log', level=logging.DEBUG)

load_dotenv()

rpc_url = os.getenv("VGAME_RPC_URL", "http://localhost:8545")
enforcer_address = os.getenv("VGAME_ENFORCER_ADDRESS")
verifier_address = os.getenv("VGAME_VERIFIER_ADDRESS")


async def main(account: str, poll_interval: float, always_challenge: bool):
    if enforcer_address is None or verifier_address is None:
        raise ValueError("VGAME_ENFORCER_ADDRESS and VGAME_VERIFIER_ADDRESS must be set")

    enforcer, verifier, poller = connect(rpc_url, enforcer_address, verifier_address, poll_interval=poll_interval)

    Coordinator(enforcer, verifier, account, ToyVM(), fragmenter=fragment_commitment, log_tag=account[:8],
                always_challenge=always_challenge,
                on_slashed=lambda execution_id: print(f"Slashed on execution 0x{execution_id.hex()}"))

    print(f"Watching {rpc_url} as {account}")
    await poller.run()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Validates every registered execution, and plays the disputes")

    parser.add_argument("account", type=str, help="Address of an account unlocked on the node")
    parser.add_argument("--poll-interval", type=float, default=1, help="Seconds between two polls of the logs")
    parser.add_argument("--always-challenge", action="store_true", help="Dispute every execution")

    args = parser.parse_args()

    try:
        asyncio.run(main(args.account, args.poll_interval, args.always_challenge))
    except KeyboardInterrupt:
        pass  # exit
