"""Drive one payment through a running orchestrator.

Usage:
    python scripts/simulate_payment.py 100 EUR SOLANA [tx_reference]

Without a reference the script only requests the payment and prints the
instructions; with one it submits the reference and prints the final status.
"""

import asyncio
import json
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).parent.parent))

from chainsettle.config import config


async def simulate(amount: str, currency: str, network: str, reference: str = None):
    base_url = f"http://localhost:{config.orchestrator_port}"

    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
        response = await client.post(
            "/payments",
            json={"fiat_amount": amount, "currency": currency, "network": network},
        )
        response.raise_for_status()
        instructions = response.json()
        print(json.dumps(instructions, indent=2))

        if not reference:
            print(f"\n{instructions['instruction']}")
            return

        response = await client.post(
            f"/payments/{instructions['intent_id']}/reference",
            json={"reference": reference},
        )
        print(f"\nStatus {response.status_code}:")
        print(json.dumps(response.json(), indent=2))


if __name__ == "__main__":
    if len(sys.argv) < 4:
        print(__doc__)
        sys.exit(1)
    asyncio.run(simulate(*sys.argv[1:5]))
