"""
Console output helpers.

Every phase reports progress through these functions so the colors and
prefixes stay consistent across the tool.
"""

import glob
import os
import sys


# ANSI color codes for terminal output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"


def _use_color(stream):
    if os.environ.get("NO_COLOR"):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def _emit(color, label, message, stream=None):
    stream = stream or sys.stdout
    if _use_color(stream):
        print(f"{color}{label}{Colors.RESET} {message}", file=stream)
    else:
        print(f"{label} {message}", file=stream)


def print_error(message):
    """Print an error message in red"""
    _emit(Colors.RED + Colors.BOLD, "ERROR:", message, sys.stderr)


def print_success(message):
    """Print a success message in green"""
    _emit(Colors.GREEN, "SUCCESS:", message)


def print_warning(message):
    """Print a warning message in yellow"""
    _emit(Colors.YELLOW, "WARNING:", message)


def print_info(message):
    """Print an info message in cyan"""
    _emit(Colors.CYAN, "INFO:", message)


def print_command(message):
    """Print a command in magenta"""
    _emit(Colors.MAGENTA, "COMMAND:", message)


def print_step(message):
    """Print a step or action in blue"""
    if _use_color(sys.stdout):
        print(f"{Colors.BLUE}{Colors.BOLD}===== {message} ====={Colors.RESET}")
    else:
        print(f"===== {message} =====")


def dump_logs(patterns):
    """
    Print the content of every log file matching the given glob patterns.

    Used when a phase aborts so the user sees what QEMU or the build wrote.
    Unreadable files are reported and skipped.
    """
    for pattern in patterns:
        for path in sorted(glob.glob(pattern)):
            print_step(f"Log: {path}")
            try:
                with open(path, "r", errors="replace") as f:
                    sys.stderr.write(f.read())
            except OSError as e:
                print_warning(f"Could not read {path}: {e}")
