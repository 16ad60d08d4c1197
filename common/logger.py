import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def config_logger(logging_level):
    """Configure the root logger for a sink process.

    Replaces any handler installed by an earlier ``basicConfig`` call so the
    level read from config is the one that applies.
    """
    level = logging_level.upper() if isinstance(logging_level, str) else logging_level
    logging.basicConfig(format=LOG_FORMAT, datefmt=DATE_FORMAT, level=level, force=True)

    logging.getLogger("pika").setLevel(logging.ERROR)
