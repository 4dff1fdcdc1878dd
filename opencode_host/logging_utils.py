"""Structured JSONL logging helpers for the opencode host companion."""

from __future__ import annotations

import hashlib
import json
import os
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO


LEVEL_ORDER = {
    "debug": 10,
    "info": 20,
    "warn": 30,
    "error": 40,
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def stable_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


@dataclass
class LoggerConfig:
    level: str = "info"
    rotate_mb: int = 20
    retention_files: int = 10
    echo: bool = False

    @property
    def min_level(self) -> int:
        return LEVEL_ORDER.get(self.level.lower(), LEVEL_ORDER["info"])

    @property
    def rotate_bytes(self) -> int:
        return max(self.rotate_mb, 1) * 1024 * 1024

    @property
    def retention(self) -> int:
        return max(self.retention_files, 1)


class JsonlLogger:
    """Lightweight JSONL logger with size-based rotation and optional console echo.

    ``file_path`` may be None, in which case records only go to the console
    (when echo is enabled) or nowhere at all.
    """

    def __init__(
        self,
        file_path: Path | None,
        component: str,
        host_id: str = "",
        run_id: str = "",
        config: LoggerConfig | None = None,
        stream: TextIO | None = None,
    ) -> None:
        self.file_path = file_path
        self.component = component
        self.host_id = host_id
        self.run_id = run_id
        self.config = config or LoggerConfig()
        self.stream = stream
        if file_path is not None:
            ensure_dir(file_path.parent)

    def child(self, component: str) -> "JsonlLogger":
        return JsonlLogger(
            self.file_path,
            component=component,
            host_id=self.host_id,
            run_id=self.run_id,
            config=self.config,
            stream=self.stream,
        )

    def _should_log(self, level: str) -> bool:
        return LEVEL_ORDER.get(level.lower(), LEVEL_ORDER["info"]) >= self.config.min_level

    def _rotate(self) -> None:
        assert self.file_path is not None
        if not self.file_path.exists():
            return
        if self.file_path.stat().st_size < self.config.rotate_bytes:
            return
        ts = int(time.time())
        rotated = self.file_path.with_suffix(self.file_path.suffix + f".{ts}")
        self.file_path.rename(rotated)

        pattern = f"{self.file_path.name}.*"
        backups = sorted(self.file_path.parent.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True)
        for old in backups[self.config.retention :]:
            try:
                old.unlink()
            except OSError:
                pass

    def _echo(self, record: dict[str, Any]) -> None:
        if not self.config.echo or record["level"] == "debug":
            return
        fields = " ".join(
            f"{key}={value}"
            for key, value in record.items()
            if key not in {"ts", "level", "component", "event", "host_id", "run_id"} and value not in (None, "")
        )
        line = f"[{record['component']}] {record['event']}"
        if fields:
            line = f"{line} {fields}"
        stream = self.stream or sys.stderr
        try:
            stream.write(line + "\n")
            stream.flush()
        except (OSError, ValueError):
            pass

    def event(self, level: str, event: str, **kwargs: Any) -> None:
        if not self._should_log(level):
            return
        record = {
            "ts": utc_now_iso(),
            "level": level.lower(),
            "component": self.component,
            "event": event,
            "host_id": self.host_id,
            "run_id": self.run_id,
            **kwargs,
        }
        self._echo(record)
        if self.file_path is None:
            return
        try:
            self._rotate()
            with self.file_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        except OSError:
            # Logging failures must not crash the daemon.
            pass


def null_logger(component: str) -> JsonlLogger:
    return JsonlLogger(None, component=component)


def read_logging_config(default_level: str = "info", echo: bool = False) -> LoggerConfig:
    level = os.environ.get("OPENCODE_HOST_LOG_LEVEL", default_level)
    rotate = _parse_int(os.environ.get("OPENCODE_HOST_LOG_ROTATION_MB"), 20)
    retention = _parse_int(os.environ.get("OPENCODE_HOST_LOG_RETENTION_FILES"), 10)
    return LoggerConfig(level=level, rotate_mb=rotate, retention_files=retention, echo=echo)


def _parse_int(raw: str | None, fallback: int) -> int:
    if not raw:
        return fallback
    try:
        value = int(raw)
        return value if value > 0 else fallback
    except ValueError:
        return fallback
