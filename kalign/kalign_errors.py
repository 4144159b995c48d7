"""KALIGN exception hierarchy.

Per-track fit failures are recoverable and swallowed by the refitter.
Configuration and update failures are fatal and reach the caller.
"""


class AlignmentError(Exception):
    """Base class for all alignment framework failures."""


class ConfigurationError(AlignmentError, ValueError):
    """Malformed configuration or incompatible stored parameters."""


class TrajectoryFitError(AlignmentError):
    """A single track could not be refitted (too few hits, singular fit)."""


class UpdateError(AlignmentError):
    """The sequential parameter update could not be applied."""


class AlignmentRuntimeError(AlignmentError):
    """An event failed inside the update step; the run was terminated."""
