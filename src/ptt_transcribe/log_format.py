import logging

RESET = "\033[0m"
DIM = "\033[2m"
BOLD = "\033[1m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
MAGENTA = "\033[35m"
CYAN = "\033[36m"

LEVEL_COLORS = {
    logging.DEBUG: DIM,
    logging.INFO: GREEN,
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: RED + BOLD,
}

# (predicate, style) pairs; first match wins
HIGHLIGHTS = (
    (lambda msg: msg.startswith("State:") and "->" in msg, BOLD + CYAN),
    (lambda msg: msg.startswith("Status:"), BOLD + MAGENTA),
    (lambda msg: msg.startswith("Transcript:") and msg.endswith("(interim)"), DIM + CYAN),
    (lambda msg: msg.startswith("Transcript:"), CYAN),
    (lambda msg: "Finalize" in msg, BOLD + YELLOW),
)

NOISY_LOGGERS = ("websockets", "httpx", "httpcore")


def _style_for(record: logging.LogRecord, msg: str) -> str:
    for matches, style in HIGHLIGHTS:
        if matches(msg):
            return style
    if record.levelno == logging.DEBUG:
        return DIM
    if record.levelno >= logging.WARNING:
        return LEVEL_COLORS[record.levelno]
    return ""


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, "")
        time = self.formatTime(record, self.datefmt)
        name = record.name.rsplit(".", 1)[-1]
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"

        style = _style_for(record, msg)
        if style:
            msg = f"{style}{msg}{RESET}"
        return f"{DIM}{time}{RESET} {color}{record.levelname:<5}{RESET} {DIM}{name:<18}{RESET} {msg}"


def configure_logging(verbose: bool = False, log_file: str = "") -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(ColoredFormatter(datefmt="%H:%M:%S"))
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
