import logging

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """루트 로거 설정 (uvicorn / sweeper 공통)."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    # SQL echo 는 DEBUG 에서도 끔
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
