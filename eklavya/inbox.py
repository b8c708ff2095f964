"""Question files: a markdown body plus optional frontmatter run options.

Files dropped into the inbox folder are run oldest first, then moved to the
archive folder (prefixed ``FAILED_`` when the session did not complete).
"""

import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import frontmatter

from config.config_loader import InboxConfig

# frontmatter key -> run option name
FRONTMATTER_KEYS = {
    "council": "council_id",
    "rounds": "rounds",
    "personas": "personas",
    "provider": "provider",
    "context": "context",
}


@dataclass
class QuestionFile:
    path: Path
    question: str
    options: dict[str, Any] = field(default_factory=dict)


def ensure_dirs(inbox: InboxConfig) -> None:
    inbox.dir.mkdir(parents=True, exist_ok=True)
    inbox.archive_dir.mkdir(parents=True, exist_ok=True)


def scan_inbox(inbox_dir: Path) -> list[Path]:
    """Pending .md files, oldest first."""
    return sorted(inbox_dir.glob("*.md"), key=lambda p: p.stat().st_mtime)


def _option_value(key: str, value: Any) -> Any:
    if key == "rounds":
        if isinstance(value, bool):
            raise ValueError(f"frontmatter 'rounds' must be an integer, got {value!r}")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"frontmatter 'rounds' must be an integer, got {value!r}") from None
    if key == "personas" and isinstance(value, list):
        return [str(v) for v in value]
    return str(value)


def parse_file(file_path: Path) -> QuestionFile:
    """Read a question file.

    Unknown frontmatter keys and empty values are ignored. Recognised keys
    come back under their run option names, ready for resolve_run_options.

    Raises:
        ValueError: a recognised key has an unusable value.
        yaml.YAMLError: the frontmatter block is not valid YAML.
    """
    post = frontmatter.load(str(file_path))
    options = {
        FRONTMATTER_KEYS[key]: _option_value(key, value)
        for key, value in post.metadata.items()
        if key in FRONTMATTER_KEYS and value is not None
    }
    return QuestionFile(path=file_path, question=post.content.strip(), options=options)


def archive_file(file_path: Path, archive_dir: Path, *, failed: bool = False) -> Path:
    """Move ``file_path`` into ``archive_dir`` under a timestamped name.

    An existing archive entry is never overwritten; a counter is appended
    to the stem instead.
    """
    archive_dir.mkdir(parents=True, exist_ok=True)
    prefix = "FAILED_" if failed else ""
    stem = f"{prefix}{datetime.now().strftime('%Y-%m-%dT%H%M')}_{file_path.stem}"
    dest = archive_dir / f"{stem}{file_path.suffix}"
    counter = 1
    while dest.exists():
        dest = archive_dir / f"{stem}-{counter}{file_path.suffix}"
        counter += 1
    shutil.move(str(file_path), str(dest))
    return dest
