import logging
import sys


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(verbosity: int = 0, quiet: bool = False) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG
    if quiet:
        level = logging.WARNING

    # 파드 로그는 stdout 으로 흘러가므로 진행 로그는 stderr 로 보낸다.
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )
    # kubernetes 클라이언트의 urllib3 디버그 로그는 너무 시끄럽다.
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
