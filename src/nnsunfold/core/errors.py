"""Exceptions raised by the unfolding engine.

Every error keeps the context needed to diagnose it without re-running
(iteration, channel or bin index, offending setting) as attributes, and
repeats that context in its message.
"""

from __future__ import annotations

from typing import Any, Optional


class UnfoldingError(Exception):
    """Base class for all nnsunfold errors."""
    pass


class ConfigurationError(UnfoldingError, ValueError):
    """Missing or malformed settings, unknown metric or prior names, or
    inputs outside their documented domain (negative or non-finite values).

    Raised before any iteration starts.
    """

    def __init__(self, message: str, *, setting: Optional[str] = None, value: Any = None):
        self.setting = setting
        self.value = value
        if setting is not None:
            message = f"{message} (setting {setting!r} = {value!r})"
        super().__init__(message)


class DimensionError(UnfoldingError, ValueError):
    """Matrix/vector shape mismatch. Fatal for the whole run."""

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[int] = None,
        actual: Optional[int] = None,
        label: Optional[str] = None,
    ):
        self.expected = expected
        self.actual = actual
        self.label = label
        super().__init__(message)


class NumericalInstabilityError(UnfoldingError, ArithmeticError):
    """Zero/negative forward estimate, non-positive MAP denominator or
    non-finite values appearing during an iteration.

    Fatal to the solve (or resampling trial) in which it occurs.
    """

    def __init__(
        self,
        message: str,
        *,
        iteration: Optional[int] = None,
        channel: Optional[int] = None,
        bin: Optional[int] = None,
        beta: Optional[float] = None,
        trial: Optional[int] = None,
    ):
        self.reason = message
        self.iteration = iteration
        self.channel = channel
        self.bin = bin
        self.beta = beta
        self.trial = trial
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        for key in ("trial", "iteration", "channel", "bin", "beta"):
            value = getattr(self, key)
            if value is not None:
                context.append(f"{key}={value}")
        if not context:
            return self.reason
        return f"{self.reason} [{', '.join(context)}]"

    def with_trial(self, trial: int) -> "NumericalInstabilityError":
        """Return a copy of this error tagged with a resampling trial index."""
        return NumericalInstabilityError(
            self.reason,
            iteration=self.iteration,
            channel=self.channel,
            bin=self.bin,
            beta=self.beta,
            trial=trial,
        )
