from __future__ import annotations

from dataclasses import dataclass


class MacdevError(RuntimeError):
    pass


class PackageManagerMissingError(MacdevError):
    pass


class ManifestMissingError(MacdevError):
    pass


class ManifestParseError(MacdevError):
    pass


class NotTrackedError(MacdevError):
    pass


class CommandError(MacdevError):
    def __init__(self, command: list[str], returncode: int, output: str = "") -> None:
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        super().__init__(str(self))

    def __str__(self) -> str:
        cmd = " ".join(self.command)
        detail = self.output.strip()
        if detail:
            return f"`{cmd}` failed with exit code {self.returncode}: {detail}"
        return f"`{cmd}` failed with exit code {self.returncode}"


@dataclass(frozen=True)
class BestEffort:
    """Outcome of a step whose failure must not abort the surrounding operation."""

    ok: bool
    detail: str | None = None

    @classmethod
    def success(cls) -> "BestEffort":
        return cls(ok=True)

    @classmethod
    def failure(cls, detail: str) -> "BestEffort":
        return cls(ok=False, detail=detail)
