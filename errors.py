from __future__ import annotations


class PhaseError(ValueError):
    """Operation not allowed in the session's current phase."""


class DraftTooShortError(ValueError):
    pass


class PasscodeRejected(ValueError):
    pass


class SessionNotFound(LookupError):
    pass


class SessionBusyError(RuntimeError):
    """Another request for the same session is still running."""


class GeneratorError(RuntimeError):
    """The language-model service failed or returned something unusable."""
