#!/usr/bin/env python3
"""
Example of embedding the relayer in another asyncio application.
"""
import asyncio
import logging
import os

from pingpong_relayer import (
    FileIntentStore, LifecycleHandle, OperatorAlerter, Orchestrator, ResponseSubmitter,
    RetryPolicy, Web3ChainGateway
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main() -> int:
    """
    Run the relayer for a fixed time next to other work.

    This example shows how to:
    1. Build the gateway, store and orchestrator by hand
    2. Use a custom retry policy
    3. Stop the relayer from application code instead of a signal
    """
    rpc_url = os.environ.get("RPC_URL", "https://ethereum-sepolia-rpc.publicnode.com")
    contract_address = os.environ.get("CONTRACT_ADDRESS")
    private_key = os.environ.get("PRIVATE_KEY")

    if not contract_address or not private_key:
        print("ERROR: CONTRACT_ADDRESS and PRIVATE_KEY environment variables are required")
        return 1

    gateway = Web3ChainGateway(rpc_url=rpc_url, contract_address=contract_address, priv_key=private_key)
    store = FileIntentStore("./pingpong-intents.json")
    alerter = OperatorAlerter(os.environ.get("ALERT_WEBHOOK_URL"))

    # Faster give-up than the default, with fee bumps of 25%
    policy = RetryPolicy(max_retries=3, fee_escalation="1.25", confirmation_timeout=60)
    lifecycle = LifecycleHandle()
    orchestrator = Orchestrator(
        store,
        gateway,
        submitter=ResponseSubmitter(store, gateway, policy),
        alerter=alerter,
        lifecycle=lifecycle,
        start_block=int(os.environ.get("START_BLOCK", "0")),
        reconcile_interval=60,
    )

    async def stop_later():
        await asyncio.sleep(600)
        lifecycle.request_stop("example finished")

    stopper = asyncio.create_task(stop_later())
    try:
        exit_code = await orchestrator.run()
    finally:
        stopper.cancel()
        await gateway.close()
        await store.close()
        alerter.close()

    pending = await FileIntentStore("./pingpong-intents.json").list_pending()
    print(f"Relayer exited with {exit_code}, {len(pending)} intents still unconfirmed")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
