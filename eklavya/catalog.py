"""Persona and council catalogs: built-in YAML records plus optional user files.

Records are validated when a catalog is loaded; lookups afterwards only
fail for unknown ids.
"""

import logging
import re
from pathlib import Path
from typing import Any

import yaml

from config.config_loader import CatalogConfig
from eklavya.models import VERBOSITY_LEVELS, Council, Participant

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).parent / "data"
BUILTIN_PERSONAS = _DATA_DIR / "personas.yaml"
BUILTIN_COUNCILS = _DATA_DIR / "councils.yaml"

_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
MIN_COUNCIL_ROUNDS = 1
MAX_COUNCIL_ROUNDS = 3


class CatalogError(Exception):
    """A catalog file or record is malformed."""


class NotFoundError(CatalogError, KeyError):
    """No record with the requested id."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


# ─── Record validation ────────────────────────────────────────────────────────


def _require_str(raw: dict, key: str, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise CatalogError(f"{where}: '{key}' must be a non-empty string")
    return value.strip()


def _optional_str(raw: dict, key: str, where: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise CatalogError(f"{where}: '{key}' must be a string")
    return value.strip() or None


def _record_id(raw: Any, where: str) -> str:
    if not isinstance(raw, dict):
        raise CatalogError(f"{where}: record must be a mapping")
    record_id = _require_str(raw, "id", where)
    if not _ID_PATTERN.match(record_id):
        raise CatalogError(f"{where}: invalid id '{record_id}' (lowercase letters, digits, '-' and '_')")
    return record_id


def parse_participant(raw: Any, source: str = "<memory>") -> Participant:
    """Validate one persona record. Raises CatalogError on any bad field."""
    record_id = _record_id(raw, source)
    where = f"{source}: persona '{record_id}'"

    expertise = raw.get("expertise")
    if not isinstance(expertise, list) or not expertise or not all(isinstance(e, str) for e in expertise):
        raise CatalogError(f"{where}: 'expertise' must be a non-empty list of strings")

    level = raw.get("contrarian_level")
    if isinstance(level, bool) or not isinstance(level, (int, float)) or not 0.0 <= level <= 1.0:
        raise CatalogError(f"{where}: 'contrarian_level' must be a number between 0 and 1")

    verbosity = raw.get("verbosity", "medium")
    if verbosity not in VERBOSITY_LEVELS:
        raise CatalogError(f"{where}: 'verbosity' must be one of {', '.join(VERBOSITY_LEVELS)}")

    return Participant(
        id=record_id,
        name=_require_str(raw, "name", where),
        role=_require_str(raw, "role", where),
        expertise=tuple(e.strip() for e in expertise if e.strip()),
        style=_require_str(raw, "style", where),
        contrarian_level=float(level),
        verbosity=verbosity,
        bias=_optional_str(raw, "bias", where),
        display_name=_optional_str(raw, "display_name", where),
        provider=_optional_str(raw, "provider", where),
        model=_optional_str(raw, "model", where),
    )


def parse_council(raw: Any, source: str = "<memory>") -> Council:
    """Validate one council record. Raises CatalogError on any bad field."""
    record_id = _record_id(raw, source)
    where = f"{source}: council '{record_id}'"

    persona_ids = raw.get("persona_ids")
    if not isinstance(persona_ids, list) or not persona_ids or not all(isinstance(p, str) for p in persona_ids):
        raise CatalogError(f"{where}: 'persona_ids' must be a non-empty list of ids")

    rounds = raw.get("rounds", 2)
    if isinstance(rounds, bool) or not isinstance(rounds, int) or not MIN_COUNCIL_ROUNDS <= rounds <= MAX_COUNCIL_ROUNDS:
        raise CatalogError(f"{where}: 'rounds' must be an integer {MIN_COUNCIL_ROUNDS}-{MAX_COUNCIL_ROUNDS}")

    return Council(
        id=record_id,
        name=_require_str(raw, "name", where),
        description=_optional_str(raw, "description", where) or "",
        persona_ids=tuple(p.strip() for p in persona_ids),
        rounds=rounds,
        focus=_optional_str(raw, "focus", where),
    )


def _read_records(path: Path, section: str) -> list[Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise CatalogError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise CatalogError(f"{path}: expected a mapping with a '{section}' list")
    records = raw.get(section) or []
    if not isinstance(records, list):
        raise CatalogError(f"{path}: '{section}' must be a list")
    return records


# ─── Catalogs ─────────────────────────────────────────────────────────────────


class ParticipantCatalog:
    """Read-only persona lookup by id, in definition order."""

    def __init__(self, participants: list[Participant]) -> None:
        self._items: dict[str, Participant] = {}
        for participant in participants:
            if participant.id in self._items:
                raise CatalogError(f"Duplicate persona id '{participant.id}'")
            self._items[participant.id] = participant

    @classmethod
    def from_yaml(cls, path: Path) -> "ParticipantCatalog":
        return cls([parse_participant(r, str(path)) for r in _read_records(path, "personas")])

    @classmethod
    def builtin(cls) -> "ParticipantCatalog":
        return cls.from_yaml(BUILTIN_PERSONAS)

    @classmethod
    def load(cls, user_file: Path | None = None) -> "ParticipantCatalog":
        """Built-in personas, with records from ``user_file`` added or replacing by id."""
        catalog = cls.builtin()
        if user_file and user_file.exists():
            user = cls.from_yaml(user_file)
            logger.debug("Loaded %d user personas from %s", len(user), user_file)
            catalog = cls(list({**catalog._items, **user._items}.values()))
        return catalog

    def get(self, participant_id: str) -> Participant:
        try:
            return self._items[participant_id]
        except KeyError:
            raise NotFoundError(
                f"Persona not found: '{participant_id}'. Run: eklavya personas list"
            ) from None

    def list(self) -> list[Participant]:
        return list(self._items.values())

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._items

    def __len__(self) -> int:
        return len(self._items)


class CouncilCatalog:
    """Read-only council lookup by id, in definition order."""

    def __init__(self, councils: list[Council]) -> None:
        self._items: dict[str, Council] = {}
        for council in councils:
            if council.id in self._items:
                raise CatalogError(f"Duplicate council id '{council.id}'")
            self._items[council.id] = council

    @classmethod
    def from_yaml(cls, path: Path) -> "CouncilCatalog":
        return cls([parse_council(r, str(path)) for r in _read_records(path, "councils")])

    @classmethod
    def builtin(cls) -> "CouncilCatalog":
        return cls.from_yaml(BUILTIN_COUNCILS)

    @classmethod
    def load(
        cls,
        user_file: Path | None = None,
        participants: ParticipantCatalog | None = None,
    ) -> "CouncilCatalog":
        """Built-in councils plus ``user_file``; persona references checked against ``participants``."""
        catalog = cls.builtin()
        if user_file and user_file.exists():
            user = cls.from_yaml(user_file)
            logger.debug("Loaded %d user councils from %s", len(user), user_file)
            catalog = cls(list({**catalog._items, **user._items}.values()))
        if participants is not None:
            catalog.check_references(participants)
        return catalog

    def check_references(self, participants: ParticipantCatalog) -> None:
        """Raise CatalogError if any council names a persona that does not exist."""
        for council in self._items.values():
            missing = [pid for pid in council.persona_ids if pid not in participants]
            if missing:
                raise CatalogError(f"Council '{council.id}' references unknown personas: {', '.join(missing)}")

    def get(self, council_id: str) -> Council:
        try:
            return self._items[council_id]
        except KeyError:
            raise NotFoundError(
                f"Council not found: '{council_id}'. Run: eklavya councils list"
            ) from None

    def list(self) -> list[Council]:
        return list(self._items.values())

    def __contains__(self, council_id: object) -> bool:
        return council_id in self._items

    def __len__(self) -> int:
        return len(self._items)


def load_catalogs(config: CatalogConfig) -> tuple[ParticipantCatalog, CouncilCatalog]:
    """Load both catalogs, overlaying the user files named in config."""
    participants = ParticipantCatalog.load(config.personas_file)
    councils = CouncilCatalog.load(config.councils_file, participants)
    return participants, councils


def resolve_participants(catalog: ParticipantCatalog, ids: list[str] | tuple[str, ...]) -> list[Participant]:
    """Look up participants in the given order. Raises NotFoundError on the first unknown id."""
    return [catalog.get(pid) for pid in ids]
