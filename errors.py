class PracticeError(Exception):
    """Base class for every failure the practice engine reports to the user."""


class InputError(PracticeError):
    """The loaded song has nothing to practice (no tracks, no notes)."""


class EmptySelectionError(InputError):
    def __init__(self, hand_selection: str):
        super().__init__(f"No notes found for selected hand(s): {hand_selection}")
        self.hand_selection = hand_selection


class ParseError(PracticeError):
    """The MIDI payload could not be decoded."""


class PersistenceError(PracticeError):
    """The backing store could not be read or written."""


class BackupImportError(PracticeError):
    """A backup document was malformed; nothing was imported."""
