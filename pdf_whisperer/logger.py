import logging

from rich.console import Console
from rich.logging import RichHandler

from .config import settings

console = Console(stderr=True)

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(message)s",
    datefmt="[%H:%M:%S]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            show_path=False,
        )
    ],
)

# Шумные библиотеки
for _name in ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "httpcore", "uvicorn.access"):
    logging.getLogger(_name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
