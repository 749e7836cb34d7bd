from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from pipewright.models import Artifact


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    artifact: Artifact
    phase: str
    task: str
    iteration: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self.artifact.to_dict()
        data["phase"] = self.phase
        data["task"] = self.task
        if self.iteration is not None:
            data["iteration"] = self.iteration
        return data


class ArtifactLedger:
    """Append-only record of artifact references produced during a run."""

    def __init__(self) -> None:
        self._entries: list[LedgerEntry] = []

    def extend(
        self,
        artifacts: Iterable[Artifact],
        *,
        phase: str,
        task: str,
        iteration: int | None = None,
    ) -> list[LedgerEntry]:
        added = [
            LedgerEntry(artifact=artifact, phase=phase, task=task, iteration=iteration)
            for artifact in artifacts
        ]
        self._entries.extend(added)
        return added

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(tuple(self._entries))

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    @property
    def artifacts(self) -> tuple[Artifact, ...]:
        return tuple(entry.artifact for entry in self._entries)

    def for_phase(self, phase: str, *, iteration: int | None = None) -> tuple[LedgerEntry, ...]:
        return tuple(
            entry
            for entry in self._entries
            if entry.phase == phase and (iteration is None or entry.iteration == iteration)
        )

    def to_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]
