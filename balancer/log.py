import datetime
import os
import inspect
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Optional

_output_lock = Lock()

_LEVELS = {
    'DEBUG': 10,
    'INFO': 20,
    'SUCCESS': 25,
    'WARNING': 30,
    'ERROR': 40,
}

_min_level = _LEVELS['INFO']
_log_file: Optional[Path] = None


class Colors:
    RESET = '\033[0m'
    DEBUG = '\033[90m'     # Grey
    INFO = '\033[37m'      # White (normal)
    WARNING = '\033[33m'   # Yellow
    ERROR = '\033[31m'     # Red
    SUCCESS = '\033[32m'   # Green

    CYAN = '\033[36m'


if os.name == 'nt':
    try:
        import ctypes
        kernel32 = ctypes.windll.kernel32
        handle = kernel32.GetStdHandle(-11)  # STD_OUTPUT_HANDLE = -11
        mode = ctypes.c_uint32()
        if kernel32.GetConsoleMode(handle, ctypes.byref(mode)):
            mode.value |= 0x0004  # ENABLE_VIRTUAL_TERMINAL_PROCESSING
            kernel32.SetConsoleMode(handle, mode)
        _ansi_supported = True
    except Exception:
        _ansi_supported = False
else:
    _ansi_supported = sys.stdout.isatty() if hasattr(sys.stdout, 'isatty') else False


def configure(level: Optional[str] = None, log_file: Optional[str | Path] = None) -> None:
    """Set the minimum level and an optional plain-text file sink."""
    global _min_level, _log_file
    if level:
        _min_level = _LEVELS.get(str(level).upper(), _min_level)
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _log_file = path
    else:
        _log_file = None


def get_caller_name() -> str:
    frame = inspect.currentframe()
    try:
        current_frame = frame
        for _ in range(3):
            if current_frame and current_frame.f_back:
                current_frame = current_frame.f_back
            else:
                return 'unknown'

        if current_frame:
            filename = current_frame.f_code.co_filename
            script_name = os.path.basename(filename).replace('.py', '')

            if script_name in ['log', 'coordinator_settings', '__main__']:
                if current_frame.f_back:
                    filename = current_frame.f_back.f_code.co_filename
                    script_name = os.path.basename(filename).replace('.py', '')

            return script_name

        return 'unknown'
    finally:
        del frame


def format_time(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m{secs:02d}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h{minutes:02d}m"


def log(message: str, level: str = 'INFO') -> None:
    global _log_file
    level = level.upper()
    if _LEVELS.get(level, _LEVELS['INFO']) < _min_level:
        return

    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    script_name = get_caller_name()
    color = getattr(Colors, level, Colors.INFO)

    formatted_message = f"{timestamp}\t{level}\t{script_name}\t{message}"

    with _output_lock:
        if _ansi_supported:
            print(f"{color}{formatted_message}{Colors.RESET}")
        else:
            print(formatted_message)
        if _log_file is not None:
            try:
                with _log_file.open('a', encoding='utf-8') as handle:
                    handle.write(formatted_message + '\n')
            except OSError as exc:
                # drop the file sink instead of failing every later log call
                print(f"Log file {_log_file} disabled: {exc}", file=sys.stderr)
                _log_file = None


def debug(message: str) -> None:
    log(message, 'DEBUG')


def info(message: str) -> None:
    log(message, 'INFO')


def warning(message: str) -> None:
    log(message, 'WARNING')


def error(message: str) -> None:
    log(message, 'ERROR')


def success(message: str) -> None:
    log(message, 'SUCCESS')


class ProgressBar:
    """Single-line terminal progress meter used by the command line tools."""

    def __init__(self, total=None, desc='', unit='img', ncols=None,
                 colour='cyan', leave=True, mininterval=0.1):
        self.total = total
        self.desc = desc
        self.unit = unit
        self.ncols = ncols or self._get_terminal_width()
        self.colour = getattr(Colors, colour.upper(), Colors.CYAN)
        self.leave = leave
        self.mininterval = mininterval

        self.n = 0
        self.start_time = time.time()
        self.last_print_time = 0.0

        self.closed = False
        self.displayed = False

    def _get_terminal_width(self):
        try:
            import shutil
            return shutil.get_terminal_size().columns
        except (OSError, ValueError):
            return 80

    def _format_meter(self):
        elapsed = time.time() - self.start_time
        desc_str = f"{self.desc}: " if self.desc else ""
        rate = self.n / elapsed if elapsed > 0 else 0.0

        if not self.total:
            return f"{desc_str}{self.n}{self.unit} [{format_time(elapsed)}, {rate:.1f}{self.unit}/s]"

        frac = min(self.n / self.total, 1.0)
        remaining = (self.total - self.n) / rate if rate > 0 else None
        suffix = (f" {self.n}/{self.total} [{format_time(elapsed)}<"
                  f"{format_time(remaining) if remaining is not None else '?'}, {rate:.1f}{self.unit}/s]")
        prefix = f"{desc_str}{frac * 100:3.0f}%|"
        bar_length = max(10, self.ncols - len(prefix) - len(suffix) - 1)
        filled = int(bar_length * frac)
        bar = '#' * filled + '-' * (bar_length - filled)
        if _ansi_supported:
            bar = f"{self.colour}{bar}{Colors.RESET}"
        return f"{prefix}{bar}|{suffix}"

    def update(self, n=1):
        if self.closed:
            return
        self.n += n
        now = time.time()
        if now - self.last_print_time >= self.mininterval or (self.total and self.n >= self.total):
            self.refresh()
            self.last_print_time = now

    def refresh(self):
        if self.closed:
            return
        with _output_lock:
            meter = self._format_meter()
            prefix = "\r" if self.displayed else ""
            print(f"{prefix}{meter}", end='', flush=True)
            self.displayed = True

    def set_description(self, desc):
        self.desc = desc
        self.refresh()

    def close(self):
        if self.closed:
            return
        self.closed = True
        with _output_lock:
            if self.displayed:
                if self.leave:
                    print()
                else:
                    print(f"\r{' ' * self.ncols}\r", end='', flush=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


@contextmanager
def progress_context(total=None, **kwargs):
    pbar = ProgressBar(total=total, **kwargs)
    try:
        yield pbar
    finally:
        pbar.close()
