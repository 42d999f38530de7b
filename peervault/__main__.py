"""Run the vault host: ``python -m peervault``."""
import logging

from aiohttp import web

from .conf import VaultSettings
from .server import create_app


def main() -> None:
    settings = VaultSettings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    web.run_app(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
