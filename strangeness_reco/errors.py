from __future__ import annotations


class StrangenessRecoError(Exception):
    """Base class for errors raised by :mod:`strangeness_reco`."""


class PropagationDivergence(StrangenessRecoError):
    r"""
    A track could not be transported to the requested surface.

    Raised when the local direction leaves the valid domain
    (:math:`|\sin\varphi| \ge` the configured ceiling), when the step budget is
    exhausted, or when the parameters are not finite.
    """


class MissingConditionsError(StrangenessRecoError):
    """Run conditions (field value) are unavailable and no override is configured."""


class ConfigurationError(StrangenessRecoError, ValueError):
    """Invalid or unknown configuration keys/values."""
