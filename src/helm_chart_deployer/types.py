"""Type definitions, protocols and errors shared across the deployer."""
from __future__ import annotations

from typing import List, Mapping, NamedTuple, Optional, Protocol, Sequence, TypedDict


# Protocol for named property lookups
class PropertySource(Protocol):
    """A single named source of property values."""

    name: str

    def lookup(self, key: str) -> Optional[str]:
        """Return the value for key or None when unknown."""
        ...


# Protocol for password decryption
class SecretDispatcher(Protocol):
    """Decrypts passwords stored in the server settings."""

    def decrypt(self, value: str) -> str:
        """Return the clear text for an encrypted or referenced value."""
        ...


class UnresolvedPlaceholder(TypedDict):
    """A placeholder whose property could not be resolved."""
    property: str
    file: str


class SubstitutionResult(TypedDict):
    """Result of a substitution run."""
    processed_count: int
    substituted_count: int
    copied_count: int
    unresolved: List[UnresolvedPlaceholder]
    target_dir: str


class Credentials(NamedTuple):
    """Resolved username and password, usable directly as an httpx auth tuple."""
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='****')"


class CommandResult(TypedDict):
    """Captured output of a helm invocation."""
    command: List[str]
    returncode: int
    stdout: str
    stderr: str


# Type aliases
PropertyMap = Mapping[str, str]
ExclusionPatterns = Sequence[str]


# Error types
class HelmPluginError(Exception):
    """Base exception for all chart operations."""


class ConfigurationError(HelmPluginError):
    """Invalid or ambiguous configuration, raised before any I/O."""

    def __init__(self, message: str, violations: Optional[List[str]] = None):
        super().__init__(message)
        self.violations = violations or []


class SubstitutionError(HelmPluginError):
    """Error while copying or substituting chart sources."""


class CredentialError(HelmPluginError):
    """Error resolving or decrypting credentials."""


class HelmCommandError(HelmPluginError):
    """Error from helm invocations."""

    def __init__(self, message: str, command: Optional[List[str]] = None, returncode: Optional[int] = None):
        super().__init__(message)
        self.command = command
        self.returncode = returncode


class GoalExecutionError(HelmPluginError):
    """Failure of a goal, wrapping the underlying cause."""


class ChartPublishError(HelmPluginError):
    """Error publishing a chart to a repository or registry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
