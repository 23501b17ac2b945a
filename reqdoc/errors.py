"""reqdoc errors - the failure taxonomy shared by every stage."""


class ReqdocError(Exception):
    """Base class for reqdoc errors."""


class ParseError(ReqdocError, ValueError):
    """A candidate block could not be turned into a request.

    Localized to one request: the runner records it as a failed outcome and
    moves on to the next block.
    """

    def __init__(self, reason: str, line: str | None = None, line_number: int | None = None):
        self.reason = reason
        self.line = line
        self.line_number = line_number
        super().__init__(self._format())

    def _format(self) -> str:
        msg = self.reason
        if self.line_number is not None:
            msg = f"line {self.line_number}: {msg}"
        if self.line is not None:
            msg = f"{msg} ({self.line.strip()!r})"
        return msg


class ResolutionError(ReqdocError):
    """One or more {{placeholders}} had no value in any variable layer."""

    def __init__(self, names: list[str]):
        self.names = list(names)
        super().__init__(f"Unresolved variables: {', '.join(self.names)}")


class ConfigurationError(ReqdocError):
    """Configuration is unusable. Fatal before any document executes."""


class UnsupportedDocumentError(ReqdocError):
    """The document's extension or format tag is not one reqdoc reads."""
