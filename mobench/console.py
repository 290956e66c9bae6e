"""Leveled console output used by the builders and the CLI."""
import sys
import threading


class Console:
    """Simple console output handler with configurable log level.

    Levels: none < error < info < debug
    Default: 'info'. ``--verbose`` maps to 'debug'.
    """

    LEVELS = {
        "none": 0,
        "error": 1,
        "info": 2,
        "debug": 3,
    }

    def __init__(self, level: str = "info", dry_run: bool = False):
        self.level_name = level
        self.level = self.LEVELS.get(level, 0)
        self.dry_run = dry_run
        self._lock = threading.Lock()

    @classmethod
    def for_options(cls, *, verbose: bool, dry_run: bool) -> "Console":
        return cls("debug" if verbose else "info", dry_run=dry_run)

    @property
    def verbose(self) -> bool:
        return self.level >= self.LEVELS["debug"]

    def _emit(self, text: str, *, stream=None) -> None:
        with self._lock:
            print(text, file=stream or sys.stdout, flush=True)

    def info(self, message: str) -> None:
        if self.level >= self.LEVELS["info"]:
            self._emit(f"[INFO] {message}")

    def error(self, message: str) -> None:
        if self.level >= self.LEVELS["error"]:
            self._emit(f"[ERROR] {message}", stream=sys.stderr)

    def dry(self, message: str) -> None:
        if self.dry_run:
            self._emit(f"[DRY] {message}")

    def debug(self, message: str) -> None:
        if self.level >= self.LEVELS["debug"]:
            self._emit(f"[DEBUG] {message}")

    def output(self, line: str) -> None:
        """Echo a line of child-process output (verbose only)."""
        if self.verbose:
            self._emit(f"    {line}")
