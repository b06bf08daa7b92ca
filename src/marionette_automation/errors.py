from __future__ import annotations

from typing import Optional


class MarionetteError(Exception):
    """Base class for every error raised by marionette."""


class InvalidInventory(MarionetteError, ValueError):
    """The inventory document is malformed or violates its invariants."""


class TaskDefinitionError(MarionetteError, ValueError):
    """A task file declares something the engine cannot run."""


class UndefinedVariable(MarionetteError):
    def __init__(self, variable: str, task: Optional[str] = None, reason: Optional[str] = None):
        self.variable = variable
        self.task = task
        if task:
            message = f"task '{task}' references undefined variable '{variable}'"
        else:
            message = f"undefined variable '{variable}'"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class DecryptionError(MarionetteError):
    """Vault ciphertext could not be decrypted."""


class TaskFailure(MarionetteError):
    """Raised by capability handlers when an assertion cannot be satisfied."""


class LockContention(MarionetteError):
    def __init__(self, host: str, owner: Optional[str] = None):
        self.host = host
        self.owner = owner
        suffix = f" by run {owner}" if owner else ""
        super().__init__(f"lock for host '{host}' is held{suffix}")


class StaleLock(MarionetteError):
    def __init__(self, host: str, owner: Optional[str], age: float):
        self.host = host
        self.owner = owner
        self.age = age
        super().__init__(f"lock for host '{host}' held by {owner or 'unknown'} is stale ({age:.0f}s)")


class FetchError(MarionetteError):
    """The configuration source could not be fetched."""


CONFIG_ERRORS = (InvalidInventory, TaskDefinitionError, UndefinedVariable, DecryptionError)
