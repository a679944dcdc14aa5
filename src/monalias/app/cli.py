import os
import socket
from aiohttp import web
import logging
from logging.config import dictConfig
import json


def configure_logging():
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    debug = os.getenv("MONALIAS_DEBUG", "").lower() in ("1", "true", "yes")
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)


def invoke():
    configure_logging()

    from monalias.app.config import Settings
    from monalias.app.server import start_web_server

    settings = Settings()  # type: ignore

    # run_app binds host:port itself, the admin listener is handed over as a socket
    admin_sockets = []
    if settings.admin_http_port is not None:
        admin_sockets.append(
            socket.create_server((settings.admin_http_host, settings.admin_http_port))
        )
        logging.getLogger(__name__).info(
            "Admin routes on %s:%d", settings.admin_http_host, settings.admin_http_port
        )

    web.run_app(
        start_web_server(settings),
        host=settings.http_host,
        port=settings.http_port,
        sock=admin_sockets or None,
    )


if __name__ == "__main__":
    invoke()
