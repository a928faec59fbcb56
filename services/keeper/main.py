import sys

from loguru import logger

from kryptos_keeper.config import AppSettings
from kryptos_keeper.supervisor import run


def main() -> int:
    settings = AppSettings()
    logger.remove()
    logger.add(lambda m: print(m, end=""), level=settings.log_level)
    return run(settings)


if __name__ == "__main__":
    sys.exit(main())
