# ===== Lightweight TRACE logger + console styling (shared by all rally tools) =====
import logging
import sys

TRACE_LEVEL_NUM = 5
logging.addLevelName(TRACE_LEVEL_NUM, "TRACE")

def _trace(self, message, *args, **kws):
    if self.isEnabledFor(TRACE_LEVEL_NUM):
        self._log(TRACE_LEVEL_NUM, message, args, **kws)

logging.Logger.trace = _trace

def _setup_logger(verbose: bool = False):
    # stderr keeps stdout clean for `rally supply calc ... | rally supply make -`
    level = TRACE_LEVEL_NUM if verbose else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

# Simple ANSI styling (disabled if not a TTY, or via set_color(False))
ANSI_BOLD = "\033[1m"
ANSI_DIM = "\033[2m"
ANSI_RED = "\033[31m"
ANSI_GREEN = "\033[32m"
ANSI_YELLOW = "\033[33m"
ANSI_BLUE = "\033[34m"
ANSI_CYAN = "\033[36m"
ANSI_RESET = "\033[0m"

_COLOR_ENABLED = sys.stdout.isatty()

def set_color(enabled: bool) -> None:
    global _COLOR_ENABLED
    _COLOR_ENABLED = bool(enabled) and sys.stdout.isatty()

def paint(text: str, *codes: str) -> str:
    if not _COLOR_ENABLED or not codes:
        return text
    return "".join(codes) + text + ANSI_RESET

def step_header(title, focus=None):
    """
    Print a prominent header with optional focus context.
    - title: short title for the step
    - focus: optional dict of label -> value to highlight (env, start, stop...)
    """
    bar = paint("―" * 72, ANSI_BLUE) if _COLOR_ENABLED else "—" * 72
    print("\n" + bar)
    print(paint(title, ANSI_BOLD))
    if focus:
        for k, v in focus.items():
            print(f"  • {paint(str(k) + ':', ANSI_CYAN)} {v}")
    print(bar)
