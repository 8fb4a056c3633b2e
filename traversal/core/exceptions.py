class TraversalError(RuntimeError):
    """Base class for traversal engine failures."""


class BootstrapFailedError(TraversalError):
    """Raised when the device session could not be established within the retry ceiling."""


class TransitionTimeoutError(TraversalError):
    """Raised when a state transition exceeds its time budget."""


class MalformedDecisionError(TraversalError):
    """Raised when the decision model returns output that is not a JSON object."""


class DecisionClientError(TraversalError):
    """Raised when the decision model could not be reached."""


class ActionExecutionError(TraversalError):
    """Raised when an action cannot be carried out on the device."""


class UnrecoverableError(TraversalError):
    """Raised when a recovery strategy itself fails."""


class RecoveryNotImplementedError(UnrecoverableError):
    """Raised by recovery strategies that have no implementation."""


class DeviceBusyError(TraversalError):
    """Raised when a device is already reserved by another run."""
