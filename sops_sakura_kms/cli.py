"""
sops-sakura-kms Command-Line Interface

Runs SOPS with Sakura Cloud KMS behind a local Vault transit compatible
server. Every argument is passed to SOPS unchanged.

Author: sops-sakura-kms Contributors
Date: 2026-10-19
"""

import sys
import logging
import asyncio
import signal
from typing import Sequence

import click

from sops_sakura_kms.core.config_manager import ShimConfig, load_config
from sops_sakura_kms.core.logging_config import get_logger, setup_logging
from sops_sakura_kms.core.version import show_version
from sops_sakura_kms.core.wrapper import EXIT_CODE_ERROR, run_wrapper, serve_forever
from sops_sakura_kms.exceptions import ShimError

logger = get_logger("sops_sakura_kms.cli")

VERSION_FLAGS = ("--version", "-version")


async def _run(config: ShimConfig, args: Sequence[str]) -> int:
    """Run the selected mode, turning SIGINT/SIGTERM into task cancellation."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    received: list[signal.Signals] = []

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, shutting down")
        received.append(sig)
        task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        if config.server_only:
            await serve_forever(config)
            return 0
        return await run_wrapper(config, args)
    except asyncio.CancelledError:
        if not received:
            raise
        if config.server_only:
            return 0
        return 128 + received[0].value
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def run(args: Sequence[str]) -> int:
    """
    Entry point logic shared by the click command.

    Returns:
        Process exit code
    """
    if any(arg in VERSION_FLAGS for arg in args):
        setup_logging("WARNING")
        try:
            config = load_config()
        except ShimError as e:
            logger.error(e.message)
            return EXIT_CODE_ERROR
        return asyncio.run(show_version(config, sys.stdout))

    try:
        config = load_config()
    except ShimError as e:
        setup_logging()
        logger.error(e.message)
        return EXIT_CODE_ERROR

    setup_logging(config.logging.level, config.logging.format)

    try:
        return asyncio.run(_run(config, args))
    except ShimError as e:
        logger.error(e.message, exc_info=logger.isEnabledFor(logging.DEBUG))
        return EXIT_CODE_ERROR


@click.command(
    context_settings={
        "ignore_unknown_options": True,
        "allow_interspersed_args": False,
        "help_option_names": [],
    }
)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def cli(args):
    """
    Run SOPS with Sakura Cloud KMS as a Vault transit backend.

    All arguments are passed to SOPS. Configure with environment variables:
    SAKURA_KMS_KEY_ID (or SAKURACLOUD_KMS_KEY_ID), SAKURACLOUD_ACCESS_TOKEN,
    SAKURACLOUD_ACCESS_TOKEN_SECRET, SSK_SERVER_ADDR, SSK_COMMAND and
    SSK_SERVER_ONLY.

    Examples:
        sops-sakura-kms -e secrets.yaml > secrets.enc.yaml
        sops-sakura-kms -d secrets.enc.yaml
        sops-sakura-kms --version
    """
    sys.exit(run(list(args)))


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
