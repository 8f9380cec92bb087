"""Exception taxonomy for planning and supervising an EMR run."""

from __future__ import annotations


class EmrEtlRunnerError(RuntimeError):
    """Base class for every error raised by the runner."""


class ConfigurationError(EmrEtlRunnerError, ValueError):
    """Configuration or version string could not be interpreted."""


class DirectoryNotEmptyError(EmrEtlRunnerError):
    """A stage output location already holds data from another run."""


class UnexpectedStateError(EmrEtlRunnerError):
    """Storage layout does not look the way the plan requires."""


class ClusterFailureError(EmrEtlRunnerError):
    """Terminal run failure. The message is the diagnostics report."""


class BootstrapFailureError(ClusterFailureError):
    """The cluster never came up (bootstrap actions or master startup failed)."""


class EmrExecutionError(ClusterFailureError):
    """The cluster came up but one or more steps failed."""
