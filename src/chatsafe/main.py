"""
ChatSafe Moderation Agent
=========================

Listens to a decentralized chat stream, classifies each inbound message and,
for flagged messages, warns the sender in-conversation and records the
infraction on the ledger contract.
"""

import os
import sys
from pathlib import Path

def resolve_base_dir() -> Path:
    """Determine the base directory of the project.

    Resolution order:
    1. CHATSAFE_HOME environment variable, if set.
    2. If running frozen (PyInstaller, Nuitka), the executable's directory.
    3. Otherwise the repository root two levels above this package.
    """
    if env_home := os.getenv("CHATSAFE_HOME"):
        return Path(env_home).resolve()

    if getattr(sys, "frozen", False) or getattr(sys, "compiled", False):
        return Path(sys.argv[0]).resolve().parent

    return Path(__file__).resolve().parents[2]

BASE_DIR = resolve_base_dir()
os.chdir(BASE_DIR)

import asyncio
import signal
from typing import Any

from chatsafe.ai.classifier_client import ClassifierClient
from chatsafe.configuration.app_configuration import AppConfig, app_config
from chatsafe.configuration.environment import AgentEnvironment, StartupError, load_environment
from chatsafe.database.database import Database
from chatsafe.ledger.ledger_client import ContractLedgerClient
from chatsafe.moderation.moderation_pipeline import ModerationPipeline, PipelineSettings
from chatsafe.transport.reply_sink import RelayReplySink
from chatsafe.transport.stream_source import RelayStreamSource, StreamEnded, StreamFatalError
from chatsafe.ui.console import AgentHandles, ConsoleControl, console_session
from chatsafe.util.logger import get_logger, handle_exception


logger = get_logger("main")


def build_stream(env: AgentEnvironment, config: AppConfig) -> RelayStreamSource:
    return RelayStreamSource(
        env.stream_endpoint,
        env.agent_address,
        api_token=env.relay_api_token,
        reconnect_attempts=config.stream_reconnect_attempts,
        base_delay=config.stream_reconnect_base_delay,
        max_delay=config.stream_reconnect_max_delay,
    )


async def run_agent(pipeline: ModerationPipeline, stream: Any, control: ConsoleControl) -> int:
    """Run the consumer loop until the stream stops or shutdown is requested.

    Returns
    -------
    int
        0 after a requested shutdown, 1 when the stream ended or failed.
    """
    consumer = asyncio.create_task(pipeline.run(stream), name="chatsafe-consumer")
    shutdown_wait = asyncio.create_task(control.shutdown_event.wait(), name="chatsafe-shutdown-wait")

    done, _ = await asyncio.wait({consumer, shutdown_wait}, return_when=asyncio.FIRST_COMPLETED)

    if consumer not in done:
        logger.info("Shutdown requested; stopping consumer loop.")
        consumer.cancel()
        try:
            await consumer
        except asyncio.CancelledError:
            pass
        except (StreamEnded, StreamFatalError) as exc:
            logger.warning("Stream stopped during shutdown: %s", exc)
        return 0

    shutdown_wait.cancel()
    try:
        consumer.result()
    except StreamEnded as exc:
        logger.critical("[FATAL] Message stream ended: %s. Exiting so the supervisor can restart the agent.", exc)
    except StreamFatalError as exc:
        logger.critical("[FATAL] Message stream lost: %s. Exiting so the supervisor can restart the agent.", exc)
    except Exception as exc:
        logger.critical("[FATAL] Consumer loop crashed: %s", exc, exc_info=True)
    else:
        logger.critical("[FATAL] Consumer loop returned without a stream condition.")
    return 1


def install_signal_handlers(control: ConsoleControl) -> None:
    """Route SIGTERM/SIGINT to a graceful shutdown where the platform allows it."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, control.request_shutdown)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not supported on this platform", sig)


async def shutdown_runtime(*components: Any) -> None:
    """Close every component that exposes ``close`` / ``shutdown``, in order."""
    for component in components:
        if component is None:
            continue
        closer = getattr(component, "close", None) or getattr(component, "shutdown", None)
        if closer is None:
            continue
        try:
            await closer()
        except Exception as exc:
            logger.exception("Error closing %s: %s", type(component).__name__, exc)
    logger.info("Shutdown complete.")


async def async_main() -> int:
    """Validate configuration, wire the components and run the agent.

    Returns
    -------
    int
        Process exit code.
    """
    try:
        env = load_environment(BASE_DIR)
    except StartupError as exc:
        for problem in exc.problems:
            logger.critical("Startup configuration error: %s", problem)
        logger.critical("ChatSafe cannot start; fix the environment and try again.")
        return 1

    config = app_config
    logger.info("Agent address: %s", env.agent_address)

    database = Database(config.database_path)
    try:
        await database.initialize()
    except Exception as exc:
        logger.critical("Failed to initialize database at %s: %s", config.database_path, exc)
        return 1

    ambiguous = await database.report_ambiguous_submissions()
    if ambiguous:
        logger.warning("%d ledger submission(s) from a previous run are unresolved; see 'journal'.", ambiguous)

    try:
        ledger = ContractLedgerClient.from_settings(
            env.rpc_url,
            env.contract_address,
            env.private_key,
            confirmation_timeout=config.ledger_confirmation_timeout,
        )
    except Exception as exc:
        logger.critical("Failed to initialize ledger contract client: %s", exc)
        await database.shutdown()
        return 1

    classifier = ClassifierClient(
        env.openai_api_key,
        model=config.classifier_model,
        timeout=config.classifier_timeout,
    )
    reply_sink = RelayReplySink(env.relay_api_url, api_token=env.relay_api_token, timeout=config.reply_timeout)
    stream = build_stream(env, config)

    pipeline = ModerationPipeline(
        classifier,
        ledger,
        reply_sink,
        PipelineSettings.from_app_config(config, env.agent_address),
        store=database,
    )

    control = ConsoleControl()
    control.set_handles(
        AgentHandles(
            pipeline=pipeline,
            classifier=classifier,
            ledger=ledger,
            database=database,
            stream=stream,
            agent_address=env.agent_address,
        )
    )
    install_signal_handlers(control)

    try:
        if config.console_enabled and sys.stdin.isatty():
            async with console_session(control):
                exit_code = await run_agent(pipeline, stream, control)
        else:
            exit_code = await run_agent(pipeline, stream, control)
    finally:
        control.set_handles(None)
        await shutdown_runtime(stream, reply_sink, classifier, ledger, database)

    return exit_code


def main() -> int:
    """Entrypoint that runs the async runtime and returns the process exit code."""
    logger.info("ChatSafe Agent starting...")
    try:
        return asyncio.run(async_main())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")
        return 0
    except Exception as exc:
        logger.critical("An unexpected error occurred while running the agent: %s", exc, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.excepthook = handle_exception
    sys.exit(main())
