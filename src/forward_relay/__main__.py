"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from .app import RelayApp
from .config import DEFAULT_CONFIG_PATH, load_credentials, load_routing_config
from .errors import ConfigError
from .models import Credentials, RoutingConfig, RuntimeOptions
from .session_store import DEFAULT_SESSION_PATH, SessionStore
from .telegram import TelethonGateway


async def _run(
    config: RoutingConfig,
    credentials: Credentials,
    runtime: RuntimeOptions,
    session_path: Path,
) -> None:
    store = SessionStore(session_path)
    try:
        client = TelethonGateway.create(credentials, store)
        app = RelayApp(config=config, client=client, phone=credentials.phone, runtime=runtime)
        _install_signal_handlers(app)
        try:
            await app.run()
        finally:
            await client.disconnect()
    finally:
        store.close()


def _install_signal_handlers(app: RelayApp) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, app.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead
            continue


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Forward Telegram messages between chats")
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Путь к JSON-файлу с источниками и получателями",
    )
    parser.add_argument(
        "--session",
        default=str(DEFAULT_SESSION_PATH),
        help="Путь к файлу сессии Telegram",
    )
    parser.add_argument("--log-level", default="INFO", help="Уровень логирования")
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Максимум одновременно обрабатываемых сообщений (по умолчанию без ограничения)",
    )
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=0.0,
        help="Сколько секунд ждать незавершённые пересылки при остановке",
    )
    args = parser.parse_args(argv)
    if args.max_concurrency is not None and args.max_concurrency < 1:
        parser.error("--max-concurrency должен быть не меньше 1")

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("telethon").setLevel(max(log_level, logging.WARNING))

    load_dotenv()

    try:
        config = load_routing_config(Path(args.config))
        credentials = load_credentials()
    except ConfigError as exc:
        parser.error(str(exc))

    runtime = RuntimeOptions(
        max_concurrency=args.max_concurrency,
        drain_timeout=max(0.0, args.drain_timeout),
    )
    try:
        asyncio.run(_run(config, credentials, runtime, Path(args.session)))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Остановка по запросу пользователя")


if __name__ == "__main__":
    main()
