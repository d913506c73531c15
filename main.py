#!/usr/bin/env python3
"""
AWS CLI chat gateway - Main entry point
"""
import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

from utils.helpers import load_config


def parse_cli_args(argv=None):
    """Parse runtime CLI arguments."""
    parser = argparse.ArgumentParser(description="AWS CLI chat gateway")
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config YAML file (default: config.yaml)",
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=None,
        help="Override health check port",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Validate config and print the resolved summary, then exit",
    )
    return parser.parse_args(argv)


def validate_config(config: dict) -> None:
    """Check the gateway config eagerly so bad files fail at startup."""
    from core.config import merge_configs

    executor_conf = config.get('executor') or {}
    if not isinstance(executor_conf, dict):
        raise ValueError("executor section must be a mapping")
    merge_configs(executor_conf.get('configs') or [])

    telegram_conf = (config.get('channels') or {}).get('telegram') or {}
    if telegram_conf.get('enabled', True) and not telegram_conf.get('token'):
        raise ValueError("channels.telegram.token is required")


def print_runtime_summary(config: dict) -> None:
    executor_conf = config.get('executor') or {}
    telegram_conf = (config.get('channels') or {}).get('telegram') or {}
    print(f"executor.plugin_name: {executor_conf.get('plugin_name', 'aws')}")
    print(f"executor.deps_dir: {executor_conf.get('deps_dir', '<default>')}")
    print(f"executor.strategies: {executor_conf.get('strategies', ['bundle', 'official_zip'])}")
    print(f"executor.configs: {len(executor_conf.get('configs') or [])}")
    print(f"channels.telegram.allowed_users: {len(telegram_conf.get('allowed_users') or [])}")
    print(f"logging.file: {config.get('logging', {}).get('file', './logs/gateway.log')}")
    print(f"logging.audit.file: {config.get('logging', {}).get('audit', {}).get('file')}")
    print(f"health.port: {config.get('health', {}).get('port', 18800)}")


# Configure logging
def setup_logging(config: dict):
    """Setup logging based on configuration"""
    log_config = config.get('logging', {})
    level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    log_file = log_config.get('file', './logs/gateway.log')

    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format='[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Reduce noise from libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('telegram').setLevel(logging.WARNING)
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)


def setup_audit_logger(config: dict):
    """Setup dedicated JSONL audit logger if enabled."""
    audit_conf = config.get('logging', {}).get('audit', {})
    if not audit_conf.get('enabled', False):
        return None

    audit_file = audit_conf.get('file', './logs/audit.log')
    Path(audit_file).parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger('audit')
    logger.setLevel(logging.INFO)
    logger.propagate = False
    logger.handlers.clear()
    handler = logging.FileHandler(audit_file)
    handler.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(handler)
    return logger


async def main(argv=None):
    """Main application entry point"""
    args = parse_cli_args(argv)

    try:
        config = load_config(args.config)
        validate_config(config)
    except Exception as e:
        print(f"Failed to load configuration: {e}")
        sys.exit(1)

    if args.health_port is not None:
        config.setdefault('health', {})['port'] = args.health_port

    if args.validate_only:
        print_runtime_summary(config)
        return

    setup_logging(config)
    audit_logger = setup_audit_logger(config)
    logger = logging.getLogger(__name__)
    logger.info("Starting AWS CLI gateway... config=%s", args.config)

    # Delay heavy imports so --validate-only works without full runtime deps.
    from aiohttp import web
    from channels.telegram import TelegramChannel
    from core.executor import AwsExecutor
    from core.formatter import OutputFormatter
    from core.router import Router

    try:
        telegram_conf = config['channels']['telegram']
        channel = TelegramChannel(telegram_conf)
        executor = AwsExecutor.from_config(config.get('executor') or {}, OutputFormatter(telegram_conf))
        router = Router(
            executor,
            channel,
            allowed_users=[str(u) for u in telegram_conf.get('allowed_users', [])],
            audit_logger=audit_logger,
        )
        channel.set_message_handler(router.handle_message)

        metadata = executor.metadata()
        logger.info(
            "Executor %s %s ready (strategies=%s)",
            metadata['name'],
            metadata['version'],
            [s.name for s in executor.resolver.strategies],
        )

        await channel.start()
        logger.info("Telegram channel started")

        start_time = time.time()
        health_conf = config.get('health', {})
        health_port = health_conf.get('port', 18800)

        async def health_handler(request):
            return web.json_response({
                "status": "ok",
                "uptime_seconds": round(time.time() - start_time, 1),
                "executor": metadata['name'],
                "version": metadata['version'],
                "channels": [channel.name],
            })

        health_app = web.Application()
        health_app.router.add_get("/health", health_handler)
        health_runner = web.AppRunner(health_app)
        await health_runner.setup()
        health_host = health_conf.get('host', '127.0.0.1')
        health_site = web.TCPSite(health_runner, health_host, health_port)
        await health_site.start()
        logger.info("Health endpoint listening on %s:%d/health", health_host, health_port)

        logger.info("AWS CLI gateway is running")

        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _request_shutdown(sig_num: int):
            logger.info("Received signal %s, shutting down...", sig_num)
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _request_shutdown, int(sig))
            except NotImplementedError:
                signal.signal(sig, lambda s, _f: _request_shutdown(int(s)))

        await shutdown_event.wait()

        logger.info("Shutting down...")
        await health_runner.cleanup()
        # Cancels in-flight handlers, which kills any running aws child
        await channel.stop()
        logger.info("Shutdown complete")

    except Exception as e:
        logger.error("Fatal error: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user")
