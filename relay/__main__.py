import argparse
import asyncio
import logging

import poker.models  # noqa: F401  registers the poker game-state type
from .protocol import RelayConfig
from .server import RelayServer

logging.basicConfig(level=logging.INFO)


def main() -> None:
    parser = argparse.ArgumentParser(description="Multiplayer room relay")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--debug", action="store_true", help="Log every store call and change")
    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = RelayConfig(host=args.host, port=args.port)
    server = RelayServer(config=config)
    asyncio.run(server.start())


if __name__ == "__main__":
    main()
