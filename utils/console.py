"""
Console output for the discovery CLI.

Status lines go to stderr, results to stdout, so results can be piped.

Usage:
    from utils.console import console

    console.banner("Discovery")
    console.hit(1, "Lights over the lake", "ufo", 0.0325)
    console.warning("Results are degraded")

Colors are disabled by NO_COLOR / DISCOVERY_NO_COLOR or when stdout is not
a TTY; FORCE_COLOR turns them back on.
"""

import os
import sys


# ANSI color codes
class Colors:
    """ANSI escape codes for terminal colors."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"


def _supports_color() -> bool:
    """Check if the terminal supports color output."""
    # Check for explicit disable
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("DISCOVERY_NO_COLOR"):
        return False

    # Check for explicit enable
    if os.environ.get("FORCE_COLOR"):
        return True

    if not hasattr(sys.stdout, "isatty"):
        return False
    if not sys.stdout.isatty():
        return False

    # Check for dumb terminal
    if os.environ.get("TERM") == "dumb":
        return False

    return True


class Console:
    """
    Styled console output for the CLI.

    Import and use the `console` instance.
    """

    def __init__(self, use_color: bool | None = None):
        self._use_color = _supports_color() if use_color is None else use_color

    def _colorize(self, text: str, *codes: str) -> str:
        """Apply color codes to text if color is supported."""
        if not self._use_color:
            return text
        return f"{''.join(codes)}{text}{Colors.RESET}"

    # -------------------------------------------------------------------------
    # Status output (stderr)
    # -------------------------------------------------------------------------

    def banner(self, text: str, width: int = 40):
        """Print a banner/header."""
        print(self._colorize(text, Colors.BOLD, Colors.BLUE), file=sys.stderr, flush=True)
        print(self._colorize("=" * width, Colors.DIM, Colors.BLUE), file=sys.stderr, flush=True)

    def system(self, text: str):
        """Print system message (info, status)."""
        print(self._colorize(text, Colors.BLUE), file=sys.stderr, flush=True)

    def error(self, text: str):
        """Print error message."""
        print(self._colorize(f"Error: {text}", Colors.BOLD, Colors.RED), file=sys.stderr, flush=True)

    def success(self, text: str):
        """Print success message."""
        print(self._colorize(text, Colors.GREEN), file=sys.stderr, flush=True)

    def warning(self, text: str):
        """Print warning message."""
        print(self._colorize(f"Warning: {text}", Colors.YELLOW), file=sys.stderr, flush=True)

    # -------------------------------------------------------------------------
    # Result output (stdout)
    # -------------------------------------------------------------------------

    def hit(self, index: int, title: str, category: str, score: float, detail: str = ""):
        """Print one ranked result line."""
        number = self._colorize(f"{index:>3}.", Colors.BOLD, Colors.CYAN)
        label = self._colorize(f"[{category or '-'}]", Colors.MAGENTA)
        line = f"{number} {title} {label} {self._colorize(f'{score:.4f}', Colors.DIM)}"
        if detail:
            line += f"\n     {self._colorize(detail, Colors.DIM)}"
        print(line, flush=True)

    def text(self, text: str):
        """Print plain result text."""
        print(text, flush=True)


# Global console instance
console = Console()
