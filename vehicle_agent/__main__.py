"""CLI entry point: ``python -m vehicle_agent [--once] [--adapter KIND] ...``."""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from vehicle_agent.schemas import AdapterKind


def _configure_logging(level: str, fmt: str) -> None:
    """Set up structlog with console or JSON rendering."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="vehicle_agent",
        description="Real-time vehicle telemetry and trouble-code reader",
    )
    parser.add_argument(
        "--adapter",
        choices=[kind.value for kind in AdapterKind],
        default=None,
        help="Adapter kind to try before the automatic fallback order",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Take a single reading then exit",
    )
    parser.add_argument(
        "--log",
        action="store_true",
        default=None,
        help="Record readings to rotating CSV files",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--detect",
        action="store_true",
        help="List the adapter kinds available on this host and exit",
    )
    mode.add_argument(
        "--read-dtc",
        action="store_true",
        help="Read current, pending and permanent trouble codes and exit",
    )
    mode.add_argument(
        "--clear-dtc",
        action="store_true",
        help="Read, then clear stored trouble codes and exit",
    )
    args = parser.parse_args()

    # Load settings from env / .env file first, then override with CLI flags.
    from vehicle_agent.config import AgentSettings

    settings = AgentSettings()
    if args.adapter is not None:
        settings.preferred_adapter = AdapterKind(args.adapter)
    if args.log is True:
        settings.logging_enabled = True

    _configure_logging(settings.log_level, settings.log_format)

    logger = structlog.get_logger("vehicle_agent")
    logger.info(
        "agent_starting",
        version=__import__("vehicle_agent").__version__,
        preferred_adapter=settings.preferred_adapter,
        logging=settings.logging_enabled,
        once=args.once,
    )

    from vehicle_agent.agent_loop import run_agent, run_diagnostics
    from vehicle_agent.coordinator import detect_adapters

    try:
        if args.detect:
            available = asyncio.run(detect_adapters(settings))
            print(", ".join(kind.value for kind in available))
        elif args.read_dtc or args.clear_dtc:
            asyncio.run(run_diagnostics(settings, clear=args.clear_dtc))
        else:
            asyncio.run(run_agent(settings, once=args.once))
    except KeyboardInterrupt:
        logger.info("agent_interrupted")
        sys.exit(0)


if __name__ == "__main__":
    main()
