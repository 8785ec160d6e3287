"""
Zabbix configuration file handling
==================================

Zabbix server, proxy and agent configuration files are flat ``Key=value``
files where most options ship commented out (``# Server=``). This module
parses such a file into typed lines and reconciles a set of target values
into it without disturbing anything else:

1. an active ``Key=`` line is rewritten in place;
2. otherwise the first commented ``# Key=`` line is uncommented and set;
3. otherwise ``Key=value`` is appended.

Afterwards exactly one line exists for the key. Keys that Zabbix allows to
repeat (``UserParameter``, ``Include``, ...) are never collapsed; reconciling
them only adds the values that are missing.

It also backs up a configuration file before an upgrade and re-applies the
backed-up values once the package manager has installed its own default.
"""

import difflib
import logging
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

from .errors import ConfigFileMissing

logger = logging.getLogger('zabbix_deploy')

BLANK = 'blank'
COMMENT = 'comment'
ASSIGNMENT = 'assignment'
COMMENTED = 'commented'
OTHER = 'other'

KEY_RE = re.compile(r'^[A-Za-z][\w.]*$')
ASSIGNMENT_RE = re.compile(r'^\s*([A-Za-z][\w.]*)\s*=(.*)$')
COMMENTED_RE = re.compile(r'^\s*#+\s*([A-Za-z][\w.]*)\s*=(.*)$')

MULTI_VALUE_KEYS = frozenset(['Include', 'UserParameter', 'AllowKey', 'DenyKey', 'Alias', 'LoadModule'])

MANIFEST_NAME = 'backup_manifest.txt'


def mask_value(key: str, value: str) -> str:
    return '********' if 'Password' in key or 'PSK' in key else value


class Line:
    """One line of a configuration file, classified on construction."""

    __slots__ = ('raw', 'kind', 'key', 'value')

    def __init__(self, raw: str):
        self.raw = raw
        self.key = None
        self.value = None

        text = raw.rstrip('\r')
        if not text.strip():
            self.kind = BLANK
            return

        match = ASSIGNMENT_RE.match(text)
        if match:
            self.kind = ASSIGNMENT
        else:
            match = COMMENTED_RE.match(text)
            if match:
                self.kind = COMMENTED
            elif text.lstrip().startswith('#'):
                self.kind = COMMENT
                return
            else:
                self.kind = OTHER
                return
        self.key = match.group(1)
        self.value = match.group(2).strip()

    @classmethod
    def assignment(cls, key: str, value: str) -> 'Line':
        return cls(f"{key}={value}")

    def __repr__(self):
        return f"Line({self.kind}, {self.raw!r})"


class ConfigDocument:
    """Ordered sequence of typed configuration lines."""

    def __init__(self, lines: Optional[List[Line]] = None, trailing_newline: bool = True):
        self.lines = list(lines or [])
        self.trailing_newline = trailing_newline

    @classmethod
    def parse(cls, text: str) -> 'ConfigDocument':
        if not text:
            return cls()
        parts = text.split('\n')
        trailing_newline = parts[-1] == ''
        if trailing_newline:
            parts.pop()
        return cls([Line(part) for part in parts], trailing_newline)

    @classmethod
    def read(cls, path) -> 'ConfigDocument':
        with open(path, 'r', newline='') as f:
            return cls.parse(f.read())

    def render(self) -> str:
        body = '\n'.join(line.raw for line in self.lines)
        if self.lines and self.trailing_newline:
            body += '\n'
        return body

    def write(self, path):
        with open(path, 'w', newline='') as f:
            f.write(self.render())

    def _indexes(self, key: str, kind: str) -> List[int]:
        return [i for i, line in enumerate(self.lines) if line.kind == kind and line.key == key]

    def get(self, key: str) -> Optional[str]:
        for line in self.lines:
            if line.kind == ASSIGNMENT and line.key == key:
                return line.value
        return None

    def active_settings(self) -> List[Tuple[str, str]]:
        """Active ``(key, value)`` pairs in file order."""
        return [(line.key, line.value) for line in self.lines if line.kind == ASSIGNMENT]

    def set(self, key: str, value) -> bool:
        """Make ``key`` appear exactly once, active, with ``value``. Returns True on change."""
        if not KEY_RE.match(key):
            raise ValueError(f"Invalid configuration key: {key!r}")
        value = str(value).strip()

        active = self._indexes(key, ASSIGNMENT)
        commented = self._indexes(key, COMMENTED)

        if not active and not commented:
            self.lines.append(Line.assignment(key, value))
            self.trailing_newline = True
            return True

        target = active[0] if active else commented[0]
        changed = False
        current = self.lines[target]
        if current.kind != ASSIGNMENT or current.value != value:
            self.lines[target] = Line.assignment(key, value)
            changed = True

        duplicates = set(active + commented) - {target}
        if duplicates:
            self.lines = [line for i, line in enumerate(self.lines) if i not in duplicates]
            changed = True
        return changed

    def ensure_values(self, key: str, values: Iterable) -> bool:
        """Add every value of a repeatable key that is not already active."""
        if not KEY_RE.match(key):
            raise ValueError(f"Invalid configuration key: {key!r}")

        present = {line.value for line in self.lines if line.kind == ASSIGNMENT and line.key == key}
        missing = []
        for value in values:
            value = str(value).strip()
            if value not in present and value not in missing:
                missing.append(value)
        if not missing:
            return False

        active = self._indexes(key, ASSIGNMENT)
        new_lines = [Line.assignment(key, value) for value in missing]
        if active:
            position = active[-1] + 1
            self.lines[position:position] = new_lines
        else:
            self.lines.extend(new_lines)
            self.trailing_newline = True
        return True

    def reconcile(self, plan: Dict[str, Union[str, List[str]]]) -> List[str]:
        """Apply ``plan`` in order. Returns the keys whose lines changed."""
        changed = []
        for key, value in plan.items():
            if key in MULTI_VALUE_KEYS:
                values = value if isinstance(value, (list, tuple)) else [value]
                updated = self.ensure_values(key, values)
            else:
                if isinstance(value, (list, tuple)):
                    value = value[-1]
                updated = self.set(key, value)
            if updated:
                changed.append(key)
        return changed


def settings_as_plan(settings: Iterable[Tuple[str, str]]) -> Dict[str, Union[str, List[str]]]:
    """Fold ``(key, value)`` pairs into a plan; repeatable keys keep every value."""
    plan: Dict[str, Union[str, List[str]]] = {}
    for key, value in settings:
        if key in MULTI_VALUE_KEYS:
            plan.setdefault(key, [])
            if value not in plan[key]:
                plan[key].append(value)
        else:
            plan[key] = value
    return plan


def reconcile_file(config_path, plan: Dict) -> List[str]:
    """Reconcile ``plan`` into an existing file. The file is never created here."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigFileMissing(config_path)

    document = ConfigDocument.read(config_path)
    changed = document.reconcile(plan)
    if changed:
        document.write(config_path)
    for key in changed:
        value = plan[key]
        shown = ', '.join(value) if isinstance(value, (list, tuple)) else str(value)
        logger.info(f"  {key}={mask_value(key, shown)}")
    if not changed:
        logger.info(f"{config_path} already up to date")
    return changed


class BackupRecord(NamedTuple):
    directory: Path
    config_copy: Path
    source: Path
    created: datetime


def backup_config(config_path, backup_dir, metadata: Optional[Dict[str, str]] = None) -> Optional[BackupRecord]:
    """Copy the configuration file into a timestamped backup directory."""
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(f"No configuration file found to backup: {config_path}")
        return None

    created = datetime.now()
    backup_subdir = Path(backup_dir) / f"backup_{created.strftime('%Y%m%d_%H%M%S')}"
    backup_subdir.mkdir(parents=True, exist_ok=True)

    config_copy = backup_subdir / config_path.name
    shutil.copy2(config_path, config_copy)
    _create_backup_manifest(backup_subdir, config_path, config_copy, created, metadata or {})

    logger.info(f"Configuration backed up to: {config_copy}")
    return BackupRecord(backup_subdir, config_copy, config_path, created)


def _create_backup_manifest(backup_dir: Path, source: Path, copy: Path, created: datetime, metadata: Dict[str, str]):
    with open(backup_dir / MANIFEST_NAME, 'w') as f:
        f.write(f"Backup created: {created}\n")
        for key, value in metadata.items():
            f.write(f"{key}: {value}\n")
        f.write("Backed up files:\n")
        f.write(f"  {source} -> {copy}\n")


def restore_from_backup(config_path, record: BackupRecord) -> List[str]:
    """
    Re-apply every active setting of the backup to the (new) configuration file.

    Comments and structure of the new file are kept; only values set in the
    backup are reinjected. A unified diff of the pass is stored next to the
    backup.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigFileMissing(config_path)

    logger.info(f"Restoring configuration values from {record.config_copy}")
    plan = settings_as_plan(ConfigDocument.read(record.config_copy).active_settings())

    document = ConfigDocument.read(config_path)
    original = document.render()
    changed = document.reconcile(plan)
    if changed:
        document.write(config_path)
        for key in changed:
            value = plan[key]
            shown = ', '.join(value) if isinstance(value, list) else value
            logger.info(f"  Restored: {key}={mask_value(key, shown)}")

    _save_config_diff(config_path, original, document.render(), record.directory)
    logger.info("Configuration values restored from backup")
    return changed


def _save_config_diff(config_path: Path, original: str, updated: str, backup_dir: Path):
    """Save the differences between original and updated configuration"""
    config_name = config_path.name
    diff_file = Path(backup_dir) / f"{config_name}.diff"

    diff = difflib.unified_diff(
        original.splitlines(keepends=True),
        updated.splitlines(keepends=True),
        fromfile=f"{config_name}.packaged",
        tofile=f"{config_name}.restored",
    )

    with open(diff_file, 'w') as f:
        f.writelines(diff)

    logger.info(f"Configuration differences saved to {diff_file}")
