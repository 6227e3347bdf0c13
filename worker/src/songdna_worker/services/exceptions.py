"""Shared service-layer exceptions."""

from __future__ import annotations

from typing import Sequence


class SongDNAError(Exception):
    """Base class for expected failures in the SongDNA worker."""


class MalformedLyricsError(SongDNAError):
    """Raised when lyrics are empty or cannot be segmented."""


class DNAValidationError(SongDNAError):
    """Blocking structural problem found in a SongDNA payload."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid song DNA")


class GenerationConstraintViolation(SongDNAError):
    """A generated candidate missed its section constraints."""

    def __init__(self, section_label: str, reasons: Sequence[str]) -> None:
        self.section_label = section_label
        self.reasons = list(reasons)
        super().__init__(f"{section_label}: {'; '.join(self.reasons)}")


class CollaboratorError(SongDNAError):
    """An external collaborator (generator, classifier) failed."""


class CollaboratorTimeout(CollaboratorError):
    """A collaborator call exceeded its time budget."""


class MalformedResponseError(CollaboratorError):
    """A collaborator answered with a payload we cannot use."""


class GenerationFailed(SongDNAError):
    """Generation aborted after the collaborator retry budget was spent."""


class GenerationCancelled(SongDNAError):
    """Generation was cancelled before a song was assembled."""


class RepositoryError(SongDNAError):
    """Persistence failure."""


class DNANotFoundError(RepositoryError):
    """Raised when a DNA lookup by id fails."""

    def __init__(self, dna_id: str) -> None:
        super().__init__(f"song DNA {dna_id} not found")
        self.dna_id = dna_id


class ImportFormatError(SongDNAError):
    """Raised when an exported DNA envelope cannot be imported."""


class InvalidRecordError(RepositoryError):
    """Raised when a save or update would store a record that does not validate."""
