class PubBiasError(Exception):
    """Base class for errors raised by the publication-bias workflow."""


class ConfigurationError(PubBiasError):
    """Configuration file is missing or malformed."""


class DataValidationError(PubBiasError):
    """Input data is missing, unreadable, or does not match the study-record schema."""


class MissingModeratorError(PubBiasError):
    """A requested moderator or grouping column is absent from the data."""

    def __init__(self, missing: list[str], model_name: str = None):
        self.missing = list(missing)
        self.model_name = model_name
        where = f" for model '{model_name}'" if model_name else ""
        super().__init__(f"Missing required columns{where}: {self.missing}")


class ModelSpecificationError(PubBiasError):
    """The requested model cannot be fitted to the data as specified."""


class ModelConvergenceError(PubBiasError):
    """Variance components could not be estimated for a model."""

    def __init__(self, model_name: str, reason: str):
        self.model_name = model_name
        self.reason = reason
        super().__init__(f"Model '{model_name}' failed to converge: {reason}")
