"""Rotating CSV recorder for telemetry readings.

One active file at a time, named after its creation time.  Rows are
buffered and flushed on a coarse timer, so an abrupt stop loses at most
the last few seconds of data.  Every ``start`` prunes old files down to
the retention limits; the active file is never pruned or deleted.
"""

from __future__ import annotations

import csv
import os
import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable, List, Optional

import structlog

from vehicle_agent.schemas import Reading

logger = structlog.get_logger(__name__)

LOG_PREFIX = "vehicle_log_"
LOG_SUFFIX = ".csv"

HEADER = [
    "Timestamp",
    "Speed(km/h)",
    "RPM",
    "Coolant(°C)",
    "Fuel(%)",
    "Load(%)",
    "Throttle(%)",
    "Battery(V)",
    "Intake(°C)",
]


def format_timestamp(ts: datetime) -> str:
    """``YYYY-MM-DD HH:MM:SS.mmm``"""
    return ts.strftime("%Y-%m-%d %H:%M:%S.") + f"{ts.microsecond // 1000:03d}"


def reading_to_row(reading: Reading) -> List[str]:
    return [
        format_timestamp(reading.captured_at),
        str(reading.speed),
        str(reading.engine_speed),
        str(reading.coolant_temperature),
        str(reading.fuel_level),
        str(reading.engine_load),
        str(reading.throttle_position),
        f"{reading.battery_voltage:.2f}",
        str(reading.intake_temperature),
    ]


def _stat_or_none(path: Path) -> Optional[os.stat_result]:
    """``stat()`` that tolerates files deleted out from under us."""
    try:
        return path.stat()
    except OSError:
        return None


class TelemetryLogger:
    """Owns the active CSV file and the retention policy of its directory."""

    def __init__(
        self,
        log_dir: Path | str,
        *,
        max_files: int = 10,
        max_total_bytes: Optional[int] = None,
        flush_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_files < 1:
            raise ValueError("max_files must be at least 1")
        self._log_dir = Path(log_dir)
        self._max_files = max_files
        self._max_total_bytes = max_total_bytes
        self._flush_interval = flush_interval_seconds
        self._clock = clock
        self._current: Optional[Path] = None
        self._fh: Optional[IO[str]] = None
        self._writer: Any = None
        self._last_flush = 0.0
        self._rows = 0

    # -- state --------------------------------------------------------------

    @property
    def is_logging(self) -> bool:
        return self._fh is not None

    @property
    def current_file(self) -> Optional[Path]:
        return self._current

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> bool:
        """Open a new log file.  ``False`` if already logging or on I/O error."""
        if self.is_logging:
            logger.warning("logging_already_started", file=str(self._current))
            return False

        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            path = self._new_file_path()
            fh = open(path, "x", newline="", encoding="utf-8")
        except OSError:
            logger.exception("logging_start_failed", log_dir=str(self._log_dir))
            return False

        self._fh = fh
        self._current = path
        self._writer = csv.writer(fh, lineterminator="\n")
        self._writer.writerow(HEADER)
        fh.flush()
        self._last_flush = self._clock()
        self._rows = 0
        logger.info("logging_started", file=str(path))

        self._enforce_retention()
        return True

    def log(self, reading: Reading) -> None:
        """Append one row.  No-op unless logging."""
        if self._fh is None:
            return
        try:
            self._writer.writerow(reading_to_row(reading))
            self._rows += 1
            now = self._clock()
            if now - self._last_flush >= self._flush_interval:
                self._fh.flush()
                self._last_flush = now
        except OSError:
            logger.exception("log_write_failed", file=str(self._current))

    def stop(self) -> None:
        """Flush and close the active file.  Idempotent."""
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        self._writer = None
        try:
            fh.flush()
            fh.close()
        except OSError:
            logger.exception("logging_stop_failed", file=str(self._current))
        logger.info("logging_stopped", file=str(self._current), rows=self._rows)
        self._current = None

    # -- read-only views ----------------------------------------------------

    def list_log_files(self) -> List[Path]:
        """Log files, most recently modified first."""
        if not self._log_dir.is_dir():
            return []
        stamped = []
        for path in self._log_dir.glob(f"*{LOG_SUFFIX}"):
            info = _stat_or_none(path)
            if info is not None and path.is_file():
                stamped.append((info.st_mtime, path))
        stamped.sort(key=lambda item: item[0], reverse=True)
        return [path for _, path in stamped]

    def total_log_size(self) -> int:
        total = 0
        for path in self.list_log_files():
            info = _stat_or_none(path)
            if info is not None:
                total += info.st_size
        return total

    def export_log(
        self, path: Path | str, destination: Path | str | None = None
    ) -> Optional[Path]:
        """Return a shareable path for *path*.

        With *destination* the file is copied there first; the source,
        active or not, is left untouched.
        """
        source = Path(path)
        if not source.is_file():
            return None
        if destination is None:
            return source.resolve()
        if self._fh is not None and self._is_current(source):
            self._fh.flush()
        try:
            return Path(shutil.copy2(source, destination)).resolve()
        except OSError:
            logger.exception("log_export_failed", file=str(source))
            return None

    # -- deletion -----------------------------------------------------------

    def delete_log_file(self, path: Path | str) -> bool:
        target = Path(path)
        if self._is_current(target):
            logger.warning("refusing_to_delete_active_log", file=str(target))
            return False
        try:
            target.unlink()
        except OSError:
            logger.exception("log_delete_failed", file=str(target))
            return False
        return True

    def delete_all(self) -> bool:
        """Stop logging, then delete every log file."""
        self.stop()
        ok = True
        for path in self.list_log_files():
            try:
                path.unlink()
            except OSError:
                logger.exception("log_delete_failed", file=str(path))
                ok = False
        logger.info("all_logs_deleted", log_dir=str(self._log_dir), ok=ok)
        return ok

    # -- internal -----------------------------------------------------------

    def _new_file_path(self) -> Path:
        stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        path = self._log_dir / f"{LOG_PREFIX}{stamp}{LOG_SUFFIX}"
        counter = 1
        while path.exists():
            path = self._log_dir / f"{LOG_PREFIX}{stamp}_{counter}{LOG_SUFFIX}"
            counter += 1
        return path

    def _is_current(self, path: Path) -> bool:
        if self._current is None:
            return False
        return path.resolve() == self._current.resolve()

    def _enforce_retention(self) -> None:
        """Keep the active file plus the newest ``max_files - 1`` others."""
        others = [p for p in self.list_log_files() if not self._is_current(p)]
        keep = others[: self._max_files - 1]
        doomed = others[self._max_files - 1:]

        if self._max_total_bytes is not None:
            budget = self._max_total_bytes
            if self._current is not None:
                current = _stat_or_none(self._current)
                budget -= current.st_size if current is not None else 0
            for index, path in enumerate(keep):
                info = _stat_or_none(path)
                if info is None:
                    # Removed by someone else since listing.
                    continue
                budget -= info.st_size
                if budget < 0:
                    # This file and everything older goes.
                    doomed.extend(keep[index:])
                    break

        for path in doomed:
            try:
                path.unlink(missing_ok=True)
                logger.debug("old_log_deleted", file=path.name)
            except OSError:
                logger.exception("old_log_delete_failed", file=str(path))
