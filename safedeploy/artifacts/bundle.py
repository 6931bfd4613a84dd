"""Access to the zip archive produced by the build collaborator."""

from __future__ import annotations

import io
import json
import zipfile
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from ..errors import ConfigurationError

REQUIRED_ENTRIES = ("experiment.json", "trial.json")


class BuildBundle:
    """Read-only view over a build output archive."""

    def __init__(self, entries: Dict[str, bytes]) -> None:
        self._entries = entries

    @classmethod
    def from_bytes(cls, data: bytes) -> "BuildBundle":
        try:
            with zipfile.ZipFile(io.BytesIO(data), "r") as z:
                entries = {name: z.read(name) for name in z.namelist()}
        except zipfile.BadZipFile as exc:
            raise ConfigurationError(f"Build output is not a valid archive: {exc}")
        return cls(entries)

    @staticmethod
    def pack(entries: Mapping[str, bytes | str]) -> bytes:
        """Create archive bytes from ``entries``."""
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as z:
            for name, content in entries.items():
                z.writestr(name, content)
        return buffer.getvalue()

    def names(self) -> List[str]:
        return sorted(self._entries)

    def read(self, entry: str) -> bytes:
        try:
            return self._entries[entry]
        except KeyError:
            raise ConfigurationError(f"Entry {entry} not found in build output")

    def read_text(self, entry: str) -> str:
        return self.read(entry).decode("utf-8")

    def read_json(self, entry: str) -> Any:
        try:
            return json.loads(self.read_text(entry))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Entry {entry} is not valid JSON: {exc}")

    def require(self, entries: Iterable[str] = REQUIRED_ENTRIES) -> None:
        missing = [e for e in entries if e not in self._entries]
        if missing:
            raise ConfigurationError(
                f"Experiment and Trial config not found: missing {', '.join(missing)}"
            )

    def template_pairs(self) -> Dict[str, Tuple[str, str | None]]:
        """Map template stem to its ``(*.yml, *.json)`` pair."""
        pairs: Dict[str, Tuple[str, str | None]] = {}
        for name in self.names():
            if name.endswith((".yml", ".yaml")):
                stem = name.rsplit(".", 1)[0]
                params = f"{stem}.json"
                pairs[stem] = (name, params if params in self._entries else None)
        return pairs


def parse_reference(reference: str) -> Tuple[str, str]:
    """Split an ``Artifact::entry`` reference."""
    artifact, sep, entry = reference.partition("::")
    if not sep or not artifact or not entry:
        raise ConfigurationError(
            f"Invalid artifact reference {reference!r}, expected 'Artifact::file'"
        )
    return artifact, entry


def read_reference(reference: str, inputs: Mapping[str, bytes]) -> bytes:
    """Read the entry named by ``reference`` from one of the input bundles."""
    artifact, entry = parse_reference(reference)
    if artifact not in inputs:
        raise ConfigurationError(
            f"Reference {reference} names artifact {artifact} which is not a declared input"
        )
    return BuildBundle.from_bytes(inputs[artifact]).read(entry)
