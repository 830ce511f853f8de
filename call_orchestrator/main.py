import argparse
import asyncio
import os
import signal

from .config import DEFAULT_CONFIG_PATH, load_config, validate_production_config
from .logging_config import configure_logging, get_logger
from .server import OrchestratorServer
from .services import build_services

logger = get_logger(__name__)


async def run(config_path: str = DEFAULT_CONFIG_PATH) -> None:
    config = load_config(config_path)
    configure_logging(log_level=str(config.logging.level).upper())

    errors, warnings = validate_production_config(config)
    if errors:
        logger.error("Configuration validation FAILED", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("Configuration warnings", warnings=warnings)
    logger.info("Configuration validation passed")

    services = build_services(config)
    server = OrchestratorServer(services)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await server.start(config.server.host, config.server.port)
    services.maintenance.start()
    try:
        await shutdown_event.wait()
    finally:
        await server.stop()
        await services.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="AI phone call orchestrator")
    parser.add_argument(
        "--config",
        default=os.getenv("CALL_ORCHESTRATOR_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to the YAML configuration file",
    )
    args = parser.parse_args()
    try:
        asyncio.run(run(args.config))
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("Call orchestrator has shut down.")


if __name__ == "__main__":
    main()
