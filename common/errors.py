from __future__ import annotations


class RunnerError(Exception):
    pass


class ValidationError(RunnerError, ValueError):
    pass


class CryptoError(RunnerError):
    pass


class ResourceExceededError(RunnerError):
    pass
