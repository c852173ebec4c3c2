"""Exceptions raised by the analysis."""


class ShellfishAnalysisError(Exception):
    """Base class for analysis errors."""


class MissingColumnError(ShellfishAnalysisError, KeyError):
    """A required input column is absent."""

    def __init__(self, columns):
        self.columns = list(columns)
        super().__init__(f"Missing required column(s): {', '.join(self.columns)}")

    def __str__(self) -> str:
        return self.args[0]


class InsufficientDataError(ShellfishAnalysisError, ValueError):
    """Too few (or only censored) observations for the requested estimate."""


class ModelFitError(ShellfishAnalysisError, RuntimeError):
    """No candidate model specification could be fitted."""
