from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from chatsync.core.config import load_relay_config
from chatsync.server.runtime import ServerRuntime

log = logging.getLogger("chatsync.cmd.server")


async def _run(config_path: Path, listen: str | None) -> None:
    config = load_relay_config(config_path)
    if listen:
        config = config.model_copy(update={"listen": listen})
    runtime = ServerRuntime(config)
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
    except NotImplementedError:
        pass

    log.info("Relay running at %s. Press Ctrl+C to stop.", runtime.url)
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="chatsync relay server")
    parser.add_argument("--config", default="configs/relay.yaml", help="Path to relay YAML config")
    parser.add_argument("--listen", help="Override host:port from the config")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    asyncio.run(_run(Path(args.config), args.listen))


if __name__ == "__main__":
    main()
