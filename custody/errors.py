"""
Error Taxonomy

Every failure the agent can raise during startup or a cycle. Policy gate
refusals are not errors: they are GateResult values (see policy_gate.py).
"""

from __future__ import annotations


class CustodyError(Exception):
    """Base class for all agent errors."""


class ConfigurationError(CustodyError):
    """Missing or malformed required setting. Fatal at startup."""


class LedgerError(CustodyError):
    """A ledger read, simulation or write failed."""


class DetectionError(CustodyError):
    """Signal detection failed; the block cursor was not advanced."""


class DecisionProtocolError(CustodyError):
    """The decision service returned an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolArgumentError(CustodyError):
    """A tool call named an unknown tool or carried malformed arguments."""

    def __init__(self, tool: str, message: str):
        super().__init__(f"{tool}: {message}")
        self.tool = tool


class CompilationError(CustodyError):
    """An action intent could not be compiled into low-level calls."""

    def __init__(self, message: str, kind: str | None = None, index: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.index = index


class PreflightError(CustodyError):
    """Bonding or gas preflight failed before any proposal write."""


class BondShortfallError(PreflightError):
    def __init__(self, token: str, required: int, available: int):
        super().__init__(
            f"Insufficient bond collateral {token}: "
            f"required {required}, available {available}"
        )
        self.token = token
        self.required = required
        self.available = available


class VersionFallbackExhausted(CustodyError):
    """No governance-module interface version accepted the simulated proposal."""

    def __init__(self, attempts: list[tuple[str, str]]):
        self.attempts = list(attempts)
        tried = "; ".join(f"{version}: {reason}" for version, reason in self.attempts)
        super().__init__(f"All proposal interface versions failed simulation ({tried})")

    @property
    def last_error(self) -> str | None:
        return self.attempts[-1][1] if self.attempts else None


class VenueRequestError(CustodyError):
    """Trading-venue request failed."""

    def __init__(self, method: str, path: str, status_code: int | None, body: str = ""):
        super().__init__(
            f"CLOB request failed ({method} {path}): {status_code} {body}".rstrip()
        )
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body


class TransientVenueError(VenueRequestError):
    """5xx or transport failure from the trading venue after retries ran out."""
