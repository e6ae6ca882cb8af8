import argparse
import asyncio
import contextlib
import logging
import os
import signal
from collections.abc import Sequence
from pathlib import Path

import httpx
import uvicorn
from dotenv import load_dotenv

import claimer.constants as C
from claimer.app import create_app
from claimer.config import Settings, config_file, load_settings, read_defaults
from claimer.errors import ConfigInvalid, InitializationFailure
from claimer.executor import SubmissionExecutor
from claimer.gate import BalanceGate
from claimer.horizon import AccountNotFound, HorizonClient, HorizonError
from claimer.keys import derive_keypair, validate_destination
from claimer.logging_config import setup_logging
from claimer.models import ScheduleTarget
from claimer.scheduler import DispatchPlan, DispatchScheduler
from claimer.sequence import SequenceAllocator
from claimer.timesource import TimeSource
from claimer.txn_factory import TransactionAssembler, format_amount

log = logging.getLogger("claimer.runner")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="claimer", description="Claim an unlocked balance and forward it.")
    parser.add_argument("-m", "--mode", choices=[m.value for m in C.Mode],
                        help="burst: fire at UNLOCK_TIME; poll: check every CHECK_INTERVAL (default: MODE or burst)")
    parser.add_argument("-e", "--env-file", default=".env",
                        help="dotenv file to read before the environment (default: .env)")
    parser.add_argument("-c", "--config", type=Path, default=config_file,
                        help="TOML defaults file (default: the bundled config.toml)")
    return parser.parse_args(argv)


class ControlServer(uvicorn.Server):
    """uvicorn without its own signal handling; SIGINT/SIGTERM belong to the dispatcher."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


async def _serve_control(scheduler: DispatchScheduler, settings: Settings) -> None:
    config = uvicorn.Config(
        create_app(scheduler),
        host=settings.control_host,
        port=settings.control_port,
        lifespan="off",
        log_config=None,
    )
    server = ControlServer(config)

    async def _shutdown_on_stop():
        await scheduler.stop_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(_shutdown_on_stop())
    log.info("Control API on http://%s:%s", settings.control_host, settings.control_port)
    try:
        await server.serve()
    except SystemExit:
        # uvicorn exits the process when it can't bind; keep dispatching without it.
        log.error("Control API failed to start on %s:%s, continuing without it",
                  settings.control_host, settings.control_port)
    finally:
        watcher.cancel()


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop.is_set():
            log.info("Shutdown requested")
            stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:  # Windows
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(_request_stop))


def schedule_target(settings: Settings, clock: TimeSource) -> ScheduleTarget:
    now = clock.now()
    target = ScheduleTarget(
        target_instant=settings.target_instant(now.date()),
        lead_time=settings.lead_time,
        batch_interval=settings.batch_interval,
        batch_size=settings.batch_size,
    )
    if target.fire_at <= now:
        log.warning("Unlock time %s has already passed, firing immediately", target.target_instant.isoformat())
    return target


async def run(settings: Settings) -> DispatchScheduler:
    """Bootstrap every component, then dispatch until stopped.

    Raises InitializationFailure for anything that prevents starting. A
    SIGINT or SIGTERM during bootstrap is honoured once dispatch begins, so
    nothing is submitted.
    """
    stop = asyncio.Event()
    _install_signal_handlers(stop)
    clock = await TimeSource.synchronize(settings.ntp_server, settings.ntp_timeout_s)
    keypair = derive_keypair(settings.mnemonic.get_secret_value())
    destination = validate_destination(settings.destination)
    account_id = keypair.public_key
    log.info(
        "Account %s -> %s, amount %s, fee %s stroops/op, mode %s",
        account_id, destination, format_amount(settings.amount), settings.fee_stroops, settings.mode,
    )
    target = schedule_target(settings, clock) if settings.mode == C.Mode.BURST else None

    async with HorizonClient(settings.horizon_url) as horizon:
        allocator = SequenceAllocator(horizon, account_id)
        try:
            await allocator.seed()
        except AccountNotFound as e:
            raise InitializationFailure(f"Account {account_id} not found on {settings.horizon_url}") from e
        except (HorizonError, httpx.HTTPError) as e:
            raise InitializationFailure(f"Failed to load account {account_id}: {e}") from e

        scheduler = DispatchScheduler(
            DispatchPlan.from_settings(settings, account_id, target),
            ledger=horizon,
            clock=clock,
            allocator=allocator,
            gate=BalanceGate(account_id),
            assembler=TransactionAssembler(keypair, settings.network_passphrase, validity=settings.tx_validity),
            executor=SubmissionExecutor(horizon, allocator),
            stop=stop,
        )
        async with asyncio.TaskGroup() as tg:
            tg.create_task(scheduler.run(), name="dispatcher")
            if settings.control_port:
                tg.create_task(_serve_control(scheduler, settings), name="control-api")
    return scheduler


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv(args.env_file)
    env = dict(os.environ)
    if args.mode:
        env["MODE"] = args.mode
    # provisional, so config errors reach the log before Settings validates
    try:
        defaults = read_defaults(args.config)
    except ConfigInvalid:
        defaults = {}  # load_settings reports it below
    setup_logging(env.get("LOG_FILE") or defaults.get("log_file"), env.get("LOG_LEVEL") or defaults.get("log_level"))

    try:
        settings = load_settings(env, path=args.config)
        setup_logging(settings.log_file, settings.log_level)
        asyncio.run(run(settings))
    except InitializationFailure as e:
        log.error("Initialization failed [%s]: %s", e.code, e)
        return 1
    except KeyboardInterrupt:
        log.info("Interrupted")
        return 0
    log.info("Exited cleanly")
    return 0
