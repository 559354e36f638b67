"""
swingtrader Core: Guidelines Store

Loads config/guidelines.yaml, validates it and hands out the current rule set.

The current RuleSet is an immutable object behind a single reference; a
successful load swaps that reference in one assignment so readers always see
a complete, validated snapshot. Failed validations keep the last valid set.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import yaml

from core.exceptions import RuleLoadError
from core.rules import RuleSet, ValidationResult, validate_rule_set

logger = logging.getLogger(__name__)

RuleSetListener = Callable[[RuleSet], None]


class GuidelinesStore:
    """
    Owner of the active guidelines.

    Responsibilities:
    - Parse and validate the guidelines file
    - Degrade to the last-known-good rule set on validation failure
    - Notify listeners (in registration order) after a successful reload
    - Optionally poll the file for changes and reload automatically
    """

    def __init__(self, path: Union[str, Path], backup_dir: Optional[Union[str, Path]] = None):
        """
        Args:
            path: Guidelines YAML file
            backup_dir: If set, the raw document of every successful load is
                written there as JSON
        """
        self.path = Path(path)
        self.backup_dir = Path(backup_dir) if backup_dir else None

        self._current: Optional[RuleSet] = None
        self._load_lock = threading.Lock()
        self._listeners: List[RuleSetListener] = []

        self.last_errors: List[str] = []
        self.last_warnings: List[str] = []
        self.last_load_time: Optional[datetime] = None
        self.stale = False

        self._last_mtime: Optional[float] = None
        self._watch_stop = threading.Event()
        self._watch_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> RuleSet:
        """
        Load and validate the guidelines file.

        Returns:
            The freshly loaded RuleSet, or the previous valid one when the
            file fails validation

        Raises:
            RuleLoadError: FILE_NOT_FOUND, PARSE_FAILED, or VALIDATION_FAILED
                when no valid rule set has ever been loaded
        """
        rule_set, _ = self._load()
        return rule_set

    def reload(self) -> RuleSet:
        """Re-run load() and notify listeners if a new rule set was promoted."""
        rule_set, fresh = self._load()
        if fresh:
            self._notify(rule_set)
        return rule_set

    def _load(self) -> Tuple[RuleSet, bool]:
        with self._load_lock:
            if not self.path.exists():
                raise RuleLoadError(
                    RuleLoadError.FILE_NOT_FOUND,
                    f"Guidelines file not found: {self.path}",
                )

            try:
                raw = self.path.read_text(encoding="utf-8")
                document = yaml.safe_load(raw)
                mtime = self.path.stat().st_mtime
            except yaml.YAMLError as e:
                raise RuleLoadError(
                    RuleLoadError.PARSE_FAILED,
                    f"Failed to parse {self.path}: {e}",
                ) from e
            except OSError as e:
                raise RuleLoadError(
                    RuleLoadError.FILE_NOT_FOUND,
                    f"Failed to read {self.path}: {e}",
                ) from e

            result = validate_rule_set(document)
            self.last_errors = list(result.errors)
            self.last_warnings = list(result.warnings)

            if not result.is_valid:
                for error in result.errors:
                    logger.error(f"Guidelines validation error: {error}")
                if self._current is not None:
                    logger.warning(
                        f"Rejected {self.path} ({len(result.errors)} error(s)); "
                        f"keeping last valid rule set version {self._current.version}"
                    )
                    self.stale = True
                    self._last_mtime = mtime
                    return self._current, False
                raise RuleLoadError(
                    RuleLoadError.VALIDATION_FAILED,
                    f"Guidelines validation failed with {len(result.errors)} error(s)",
                    errors=result.errors,
                )

            for warning in result.warnings:
                logger.warning(f"Guidelines warning: {warning}")

            now = datetime.now(timezone.utc)
            rule_set = result.rule_set.model_copy(
                update={"source_path": str(self.path), "loaded_at": now}
            )

            self._current = rule_set
            self.stale = False
            self.last_load_time = now
            self._last_mtime = mtime

            if self.backup_dir is not None:
                self._write_backup(document)

            logger.info(f"Loaded guidelines version {rule_set.version} from {self.path}")
            return rule_set, True

    def _write_backup(self, document: Dict[str, Any]) -> None:
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            target = self.backup_dir / f"{self.path.stem}.backup.json"
            target.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to write guidelines backup: {e}")

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def get_current(self) -> RuleSet:
        rule_set = self._current
        if rule_set is None:
            raise RuleLoadError(RuleLoadError.NOT_LOADED, "No guidelines loaded yet")
        return rule_set

    @property
    def is_loaded(self) -> bool:
        return self._current is not None

    @staticmethod
    def validate(document: Union[Dict[str, Any], RuleSet, None]) -> ValidationResult:
        return validate_rule_set(document)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def add_listener(self, listener: RuleSetListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: RuleSetListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, rule_set: RuleSet) -> None:
        for listener in list(self._listeners):
            try:
                listener(rule_set)
            except Exception as e:
                logger.error(
                    f"Guidelines listener {getattr(listener, '__name__', listener)!r} failed: {e}",
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # File watching
    # ------------------------------------------------------------------

    def start_watching(self, interval_s: float = 2.0) -> None:
        """Poll the file's mtime in a daemon thread and reload on change."""
        if self._watch_thread and self._watch_thread.is_alive():
            return
        self._watch_stop.clear()
        self._watch_thread = threading.Thread(
            target=self._watch_loop,
            args=(interval_s,),
            name="GuidelinesWatcher",
            daemon=True,
        )
        self._watch_thread.start()
        logger.info(f"Watching {self.path} for changes (every {interval_s}s)")

    def stop_watching(self) -> None:
        self._watch_stop.set()
        if self._watch_thread:
            self._watch_thread.join(timeout=3)
        self._watch_thread = None

    def check_for_changes(self) -> bool:
        """Reload if the file changed since the last load. Returns True if a reload ran."""
        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return False
        if self._last_mtime is not None and mtime == self._last_mtime:
            return False
        logger.info(f"Guidelines file changed: {self.path}")
        self.reload()
        return True

    def _watch_loop(self, interval_s: float) -> None:
        while not self._watch_stop.wait(interval_s):
            try:
                self.check_for_changes()
            except RuleLoadError as e:
                logger.error(f"Guidelines reload failed: {e}")


__all__ = ["GuidelinesStore", "RuleSetListener"]
