import logging


def configure_logging(level: str = "INFO") -> None:
    """Idempotent logging setup for the app factory."""
    root = logging.getLogger()
    if root.handlers:
        return
    numeric_level = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def get_llm_logger() -> logging.Logger:
    """Logger that emits one JSON line per AI provider call."""
    llm_logger = logging.getLogger("studybuddy.llm")
    if not llm_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        llm_logger.addHandler(handler)
    llm_logger.setLevel(logging.INFO)
    llm_logger.propagate = False
    return llm_logger
