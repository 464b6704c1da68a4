"""Custom exception classes for the hierstan package.

This module defines the hierarchy of exceptions raised while building and
running models. All of them inherit from :py:class:`HierStanError` so that
callers can catch every package-specific failure with a single clause.

The hierarchy mirrors the stages of the pipeline:

    - :py:class:`SpecificationError` and its subclasses are raised while the
      model specification is normalized and the program is generated, that is,
      before anything expensive has happened.
    - :py:class:`ConfigurationError` is raised for illegal combinations of
      sampling options.
    - :py:class:`BuildError` is raised when the external compiler fails.
    - :py:class:`ChainExecutionError` is raised when a chain fails inside the
      inference engine.
    - :py:class:`MergeError` is raised when per-chain results cannot be
      combined.
"""


class HierStanError(Exception):
    """Base class for all exceptions in the hierstan package.

    Example:
        >>> try:
        ...     fit = hierstan.fit_model("y ~ x", data=df)
        ... except HierStanError as e:
        ...     print(f"hierstan error occurred: {e}")
    """


class SpecificationError(HierStanError, ValueError):
    """Raised when the model specification is invalid."""


class FormulaError(SpecificationError):
    """Raised when a formula cannot be parsed or does not match the data."""


class FamilyError(SpecificationError):
    """Raised for unknown response families or unsupported link functions."""


class PriorError(SpecificationError):
    """Raised when a prior references a parameter that does not exist in the
    model or is otherwise malformed.
    """


class DataError(SpecificationError):
    """Raised when the data cannot be used with the requested model."""


class InitError(SpecificationError):
    """Raised when initial values cannot be resolved for the requested chains."""


class ConfigurationError(HierStanError, ValueError):
    """Raised for invalid or mutually exclusive sampling and dispatch options."""


class BuildError(HierStanError, RuntimeError):
    """Raised when the Stan program fails to compile.

    The compiler's diagnostic text is kept on the ``diagnostics`` attribute.
    """

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message if not diagnostics else f"{message}\n{diagnostics}")
        self.diagnostics = diagnostics


class ChainExecutionError(HierStanError, RuntimeError):
    """Raised when the inference engine fails for a given chain.

    :param chain_id: Index (1-based) of the failed chain, or ``None`` when the
        whole batch failed together.
    """

    def __init__(self, message: str, chain_id: int | None = None):
        super().__init__(message)
        self.chain_id = chain_id


class MergeError(HierStanError, RuntimeError):
    """Raised when per-chain results are missing, duplicated, or inconsistent."""
