"""
Command line interface for the ping/pong relayer.

Every setting comes from ``PINGPONG_*`` environment variables; the options
below override the ones operators change most often.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import typer

from .alerts import OperatorAlerter
from .config import RelayerConfig, StoreBackend
from .exceptions import ConfigError, RelayerError
from .gateway import SIGNAL_FUNCTION, get_chain_gateway
from .models import IntentStatus
from .orchestrator import EXIT_FAILURE, EXIT_OK, Orchestrator
from .store import get_intent_store
from .version import __version__

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help="Answers every Ping event of the contract with exactly one Pong.", no_args_is_help=True)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    # web3 and urllib3 are chatty at DEBUG
    for noisy in ("web3", "urllib3", "botocore"):
        logging.getLogger(noisy).setLevel(max(logging.getLevelName(level), logging.INFO))


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pingpong-relayer {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    store_backend: Optional[StoreBackend] = typer.Option(None, "--store", help="Intent store backend"),
    store_path: Optional[str] = typer.Option(None, "--store-path", help="JSON file for the file store"),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True,
                                 help="Show the version and exit"),
) -> None:
    ctx.obj = {"log_level": log_level, "store_backend": store_backend, "store_path": store_path}


def _load_config(ctx: typer.Context, **overrides: Any) -> RelayerConfig:
    options: Dict[str, Any] = dict(ctx.obj or {})
    options.update(overrides)
    try:
        config = RelayerConfig.from_env(**options)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_FAILURE)
    configure_logging(config.log_level)
    return config


async def _run_relayer(config: RelayerConfig, once: bool) -> int:
    alerter = OperatorAlerter(config.alert_webhook_url)
    try:
        store = get_intent_store(config)
        gateway = get_chain_gateway(config)
    except RelayerError as e:
        logger.error(f"Startup failed: {e}")
        alerter.close()
        return EXIT_FAILURE

    try:
        orchestrator = Orchestrator.from_config(config, store, gateway, alerter=alerter)
        return await orchestrator.run(once=once)
    finally:
        await gateway.close()
        await store.close()
        alerter.close()


@app.command()
def run(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Reconcile and backfill to the current head, then exit"),
    start_block: Optional[int] = typer.Option(None, "--start-block", help="First block to backfill on an empty store"),
) -> None:
    """Run the relayer until interrupted."""
    config = _load_config(ctx, start_block=start_block)
    raise typer.Exit(code=asyncio.run(_run_relayer(config, once)))


async def _reconcile(config: RelayerConfig) -> int:
    alerter = OperatorAlerter(config.alert_webhook_url)
    try:
        store = get_intent_store(config)
        gateway = get_chain_gateway(config)
    except RelayerError as e:
        logger.error(f"Startup failed: {e}")
        alerter.close()
        return EXIT_FAILURE

    try:
        orchestrator = Orchestrator.from_config(config, store, gateway, alerter=alerter)
        await orchestrator.check_health()
        summary = await orchestrator.reconciler.reconcile_all(on_error=orchestrator.report_failure)
    except RelayerError as e:
        logger.error(f"Reconciliation failed: {e}")
        return EXIT_FAILURE
    finally:
        await gateway.close()
        await store.close()
        alerter.close()

    typer.echo(json.dumps(summary))
    return EXIT_OK


@app.command()
def reconcile(ctx: typer.Context) -> None:
    """Run one reconciliation pass over every unconfirmed intent."""
    config = _load_config(ctx)
    raise typer.Exit(code=asyncio.run(_reconcile(config)))


async def _list_intents(config: RelayerConfig, status: Optional[IntentStatus]):
    store = get_intent_store(config)
    try:
        return await store.list_intents(status)
    finally:
        await store.close()


@app.command()
def status(
    ctx: typer.Context,
    status: Optional[IntentStatus] = typer.Option(None, "--status", help="Only list intents in this state"),
    as_json: bool = typer.Option(False, "--json", help="Print stored records as JSON lines"),
) -> None:
    """List stored intents."""
    config = _load_config(ctx)
    try:
        intents = asyncio.run(_list_intents(config, status))
    except RelayerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_FAILURE)

    for intent in intents:
        if as_json:
            typer.echo(json.dumps(intent.to_record(), sort_keys=True))
        else:
            typer.echo(
                f"{intent.block_number:>10}  {intent.status.value:<9}  {intent.key}  "
                f"{intent.response_tx_hash or '-'}"
            )
    if not as_json:
        typer.echo(f"{len(intents)} intents")


async def _ping(config: RelayerConfig) -> int:
    try:
        gateway = get_chain_gateway(config)
    except RelayerError as e:
        logger.error(f"Startup failed: {e}")
        return EXIT_FAILURE

    try:
        submitted = await gateway.submit_transaction(SIGNAL_FUNCTION, [])
        typer.echo(f"Sent {SIGNAL_FUNCTION} transaction {submitted.tx_hash}")
        receipt = await gateway.wait_for_receipt(submitted.tx_hash, timeout=config.retry.confirmation_timeout)
    except RelayerError as e:
        logger.error(f"Ping failed: {e}")
        return EXIT_FAILURE
    finally:
        await gateway.close()

    if not receipt.succeeded:
        typer.echo(f"Transaction {receipt.tx_hash} reverted in block {receipt.block_number}", err=True)
        return EXIT_FAILURE
    typer.echo(f"Mined in block {receipt.block_number}")
    return EXIT_OK


@app.command()
def ping(ctx: typer.Context) -> None:
    """Send one Ping transaction (for manual end-to-end checks)."""
    config = _load_config(ctx)
    raise typer.Exit(code=asyncio.run(_ping(config)))
