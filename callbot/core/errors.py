"""Error types raised by the call session engine and its adapters."""


class CallbotError(Exception):
    """Base class for all callbot errors."""


class ConfigResolutionError(CallbotError):
    """Call context could not be resolved. Fatal to session startup."""


class RecognizerStreamError(CallbotError):
    """The speech recognizer stream failed and was torn down."""


class RetrievalError(CallbotError):
    """The retrieval backend failed."""


class RetrievalTimeout(RetrievalError):
    """The retrieval backend did not answer in time."""


class GenerationError(CallbotError):
    """The text generation stream failed or timed out."""


class SynthesisError(CallbotError):
    """Speech synthesis failed for a single chunk."""


class TransportError(CallbotError):
    """The call transport can no longer deliver audio."""


class IllegalTransitionError(CallbotError):
    """A session state transition that the state machine forbids."""

    def __init__(self, current, target):
        super().__init__(f"Illegal transition {current} -> {target}")
        self.current = current
        self.target = target
